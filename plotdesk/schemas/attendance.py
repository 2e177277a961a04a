import uuid

from pydantic import BaseModel, Field


class OfficeCreate(BaseModel):
    name: str = Field(min_length=1)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class OfficeAssign(BaseModel):
    manager_id: str  # Local user id or identity-provider subject
    office_id: uuid.UUID


class AttendanceMark(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
