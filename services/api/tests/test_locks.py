import threading
import time

from patrol.services.locks import GuardLocks


def test_entry_is_dropped_once_released() -> None:
    locks = GuardLocks()

    with locks.hold("guard-1"):
        assert len(locks) == 1
        with locks.hold("guard-2"):
            assert len(locks) == 2

    assert len(locks) == 0


def test_same_guard_is_serialized_and_leaves_no_entries() -> None:
    locks = GuardLocks()
    inside = 0
    overlaps = []
    guard = threading.Lock()

    def work() -> None:
        nonlocal inside
        with locks.hold("guard-1"):
            with guard:
                inside += 1
                overlaps.append(inside)
            time.sleep(0.005)
            with guard:
                inside -= 1

    threads = [threading.Thread(target=work) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == [1] * 8
    assert len(locks) == 0
