from patrol.models.control_point import ControlPoint
from patrol.models.patrol_session import PatrolSession
from patrol.models.position import PositionSample
from patrol.models.checkpoint import CheckpointVisit
from patrol.models.audit import AuditEntry

__all__ = ["ControlPoint", "PatrolSession", "PositionSample", "CheckpointVisit", "AuditEntry"]
