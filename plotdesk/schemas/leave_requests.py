from datetime import date
from typing import Optional

from pydantic import BaseModel, Field


class LeaveRequestCreate(BaseModel):
    start_date: date
    end_date: date
    reason: str = Field(min_length=1)


class LeaveDecision(BaseModel):
    action: str  # APPROVE|REJECT
    rejection_reason: Optional[str] = None
