from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class VisitRequestCreate(BaseModel):
    """Booking form; fields stay optional here so a blank one reports MISSING_FIELD, not a 422."""
    model_config = ConfigDict(populate_by_name=True)

    visitor_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("visitor_name", "visitorName", "name"))
    email: Optional[str] = None
    phone: Optional[str] = None
    visit_date: Optional[str] = Field(default=None, validation_alias=AliasChoices("visit_date", "visitDate", "date"))
    visit_time: Optional[str] = Field(default=None, validation_alias=AliasChoices("visit_time", "visitTime", "time"))
    plot_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("plot_id", "plotId"))

    @field_validator('visitor_name', 'email', 'phone', 'visit_date', 'visit_time', 'plot_id', mode='before')
    @classmethod
    def to_str(cls, v):
        if v is None:
            return None
        return str(v)


class AssignManagerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Local user id or identity-provider subject
    manager_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("manager_id", "managerId", "manager_external_id", "managerClerkId"),
    )


class RejectVisitRequest(BaseModel):
    reason: Optional[str] = None
