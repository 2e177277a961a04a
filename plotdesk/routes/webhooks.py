import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import InvalidFormat
from ..services.identity import apply_identity_event, verify_webhook_signature


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/identity")
async def identity_webhook(
    request: Request,
    db: Session = Depends(get_db),
    x_webhook_signature: Optional[str] = Header(default=None),
):
    """Mirror user.created / user.updated / user.deleted events from the identity provider."""
    raw = await request.body()
    verify_webhook_signature(raw, x_webhook_signature)
    try:
        event = json.loads(raw or b"{}")
    except ValueError:
        raise InvalidFormat("Webhook body is not valid JSON")
    if not isinstance(event, dict):
        raise InvalidFormat("Webhook body must be an object")

    user = apply_identity_event(db, event)
    return {
        "status": "ok" if user else "ignored",
        "user_id": str(user.id) if user else None,
    }
