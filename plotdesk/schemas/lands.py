import uuid
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, IPvAnyAddress, field_validator

from ..models.models import PlotStatus


class LandCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plot_id: uuid.UUID = Field(validation_alias=AliasChoices("plot_id", "plotId"))
    number: str = Field(min_length=1)
    size: str = Field(min_length=1)
    price: int = Field(ge=0)
    status: PlotStatus = PlotStatus.AVAILABLE
    x: float
    y: float

    @field_validator('number', 'size', mode='before')
    @classmethod
    def strip_text(cls, v):
        if v is None:
            return v
        return str(v).strip()

    @field_validator('status', mode='before')
    @classmethod
    def upper_status(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


class LandAssign(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Local user id or identity-provider subject
    client_id: str = Field(min_length=1, validation_alias=AliasChoices("client_id", "clientId"))


class CameraUpsert(BaseModel):
    """One camera per land; posting again for the same land replaces its address and label."""
    model_config = ConfigDict(populate_by_name=True)

    land_id: uuid.UUID = Field(validation_alias=AliasChoices("land_id", "landId"))
    ip_address: IPvAnyAddress = Field(validation_alias=AliasChoices("ip_address", "ipAddress"))
    label: Optional[str] = None


class CameraUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ip_address: IPvAnyAddress = Field(validation_alias=AliasChoices("ip_address", "ipAddress"))
    label: Optional[str] = None
