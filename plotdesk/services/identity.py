"""
Identity sync.

The identity provider owns accounts; this module mirrors them into local User
rows keyed by the provider's subject id, and resolves the identities callers
pass around (a local UUID or a provider subject).
"""
import hashlib
import hmac
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..errors import Forbidden, InvalidFormat, MissingField, NotFound
from ..logging import get_logger
from ..models.models import Role, User, utcnow


logger = get_logger(__name__)


def parse_role(value: Any, default: Optional[Role] = None) -> Optional[Role]:
    """Normalise a role from an external payload; unknown values are rejected."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().upper())
    except ValueError:
        raise InvalidFormat(f"Unknown role '{value}'", {"allowed": [r.value for r in Role]})


def find_user_by_identity(db: Session, identity: Optional[str]) -> Optional[User]:
    """Look a user up by local UUID first, then by external subject id."""
    if not identity:
        return None
    identity = str(identity).strip()
    try:
        user_uuid = uuid.UUID(identity)
    except ValueError:
        user_uuid = None
    if user_uuid is not None:
        user = db.query(User).filter(User.id == user_uuid).first()
        if user:
            return user
    return db.query(User).filter(User.external_id == identity).first()


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return email.strip().lower() or None


def ensure_guest_user(
    db: Session,
    external_id: str,
    name: str,
    email: str,
    phone: str,
) -> User:
    """
    Get or create the local user for a booking submitter.

    A new identity becomes a GUEST; a known one has its contact fields
    refreshed when they changed. Does not commit.
    """
    user = db.query(User).filter(User.external_id == external_id).first()
    email = normalize_email(email)
    if user is None:
        user = User(external_id=external_id, name=name, email=email, phone=phone, role=Role.GUEST)
        db.add(user)
        db.flush()
        logger.info("guest_user_created", user_id=str(user.id), external_id=external_id)
        return user
    changed = False
    for field, value in (("name", name), ("email", email), ("phone", phone)):
        if value and getattr(user, field) != value:
            setattr(user, field, value)
            changed = True
    if changed:
        user.updated_at = utcnow()
        logger.info("guest_user_refreshed", user_id=str(user.id))
    return user


def verify_webhook_signature(raw_body: bytes, signature: Optional[str]) -> None:
    """
    Check ``X-Webhook-Signature: sha256=<hex>`` against the configured secret.

    Without a secret, unsigned events are only accepted in the dev environment;
    everywhere else the webhook is closed.
    """
    secret = settings.identity_webhook_secret
    if not secret:
        if settings.environment != "dev":
            logger.error("identity_webhook_secret_missing", environment=settings.environment)
            raise Forbidden("Webhook secret is not configured")
        logger.warning("identity_webhook_unsigned", environment=settings.environment)
        return
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not signature or not hmac.compare_digest(expected, signature.strip()):
        raise Forbidden("Invalid webhook signature")


def _extract_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    emails = data.get("email_addresses") or []
    phones = data.get("phone_numbers") or []
    email = emails[0].get("email_address") if emails and isinstance(emails[0], dict) else data.get("email")
    phone = phones[0].get("phone_number") if phones and isinstance(phones[0], dict) else data.get("phone")
    name = f"{data.get('first_name') or ''} {data.get('last_name') or ''}".strip() or data.get("name")
    metadata = data.get("public_metadata") or {}
    role = metadata.get("role") if isinstance(metadata, dict) else None
    return {
        "email": normalize_email(email),
        "phone": phone,
        "name": name or None,
        "role": role if role is not None else data.get("role"),
    }


def apply_identity_event(db: Session, event: Dict[str, Any]) -> Optional[User]:
    """
    Mirror one identity-provider event.

    Args:
        event: {"type": "user.created"|"user.updated"|"user.deleted", "data": {...}}

    Returns:
        The affected User, or None when the event is ignored
    """
    event_type = (event.get("type") or "").strip()
    data = event.get("data") or {}
    external_id = data.get("id")
    if not event_type:
        raise MissingField("type")
    if not external_id:
        raise MissingField("data.id")

    user = db.query(User).filter(User.external_id == str(external_id)).first()

    if event_type == "user.deleted":
        if user is None:
            return None
        user.is_active = False
        user.updated_at = utcnow()
        db.commit()
        logger.info("identity_user_deactivated", user_id=str(user.id))
        return user

    if event_type not in ("user.created", "user.updated"):
        logger.info("identity_event_ignored", type=event_type)
        return None

    profile = _extract_profile(data)
    if user is None:
        user = User(
            external_id=str(external_id),
            name=profile["name"],
            email=profile["email"],
            phone=profile["phone"],
            role=parse_role(profile["role"], default=Role.GUEST),
            is_active=True,
        )
        db.add(user)
        action = "created"
    else:
        for field in ("name", "email", "phone"):
            if profile[field]:
                setattr(user, field, profile[field])
        role = parse_role(profile["role"])
        if role is not None:
            user.role = role
        user.is_active = True
        user.updated_at = utcnow()
        action = "updated"
    db.commit()
    db.refresh(user)
    logger.info("identity_user_synced", action=action, user_id=str(user.id), role=user.role.value)
    return user


def find_active_client(db: Session, identity: Optional[str]) -> User:
    """Resolve a user that land or plots can be assigned to: an active CLIENT."""
    if not identity or not str(identity).strip():
        raise MissingField("client_id", "Client is required")
    user = find_user_by_identity(db, identity)
    if not user:
        raise NotFound("Client not found")
    if user.role != Role.CLIENT:
        raise Forbidden("User is not a client")
    if not user.is_active:
        raise Forbidden("Client is not active")
    return user
