from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, model_validator


class StartSessionIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    notes: str | None = Field(default=None, max_length=1000)


class TrajectoryPointIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: float | None = Field(default=None, ge=0, le=1000)
    altitude: float | None = None
    speed: float | None = Field(default=None, ge=0)
    recorded_at: datetime | None = None


class CheckpointIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    control_point_id: str | None = Field(default=None, max_length=64)
    description: str | None = Field(default=None, max_length=500)
    photo_url: str | None = Field(default=None, max_length=500)


class FinalizeIn(BaseModel):
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    notes: str | None = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def _both_or_neither(self) -> "FinalizeIn":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be sent together")
        return self


class CancelIn(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class ProximityIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
