import uuid
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..models.models import PlotStatus


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    location: Optional[str] = None
    description: Optional[str] = None

    @field_validator('name', 'location', 'description', mode='before')
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class PlotCreate(BaseModel):
    project_id: uuid.UUID
    title: str = Field(min_length=1)
    location: Optional[str] = None
    dimension: Optional[str] = None
    price: Optional[int] = Field(default=None, ge=0)
    price_label: Optional[str] = None
    facing: Optional[str] = None
    description: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: PlotStatus = PlotStatus.AVAILABLE

    @field_validator('status', mode='before')
    @classmethod
    def upper_status(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


class PlotStatusUpdate(BaseModel):
    status: PlotStatus

    @field_validator('status', mode='before')
    @classmethod
    def upper_status(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


class PlotClientAssign(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Local user id or identity-provider subject
    client_id: str = Field(min_length=1, validation_alias=AliasChoices("client_id", "clientId"))
