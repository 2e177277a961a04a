from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class BuyRequestCreate(BaseModel):
    """Purchase enquiry; blank fields are reported as MISSING_FIELD by the service."""
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    phone: Optional[str] = None
    message: Optional[str] = None
    land_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("land_id", "landId", "selectedLandId"))

    @field_validator('name', 'phone', 'message', 'land_id', mode='before')
    @classmethod
    def to_str(cls, v):
        if v is None:
            return None
        return str(v)


class AssignBuyManagerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    manager_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("manager_id", "managerId", "manager_external_id", "managerClerkId"),
    )


class RejectBuyRequest(BaseModel):
    reason: Optional[str] = None
