"""
Notification service.

Notifications are written to the outbox (status "pending") inside the caller's
transaction and drained later by the dispatcher. Writing one is best-effort: a
failure is logged and never propagates into the operation that triggered it.
"""
import smtplib
import threading
import uuid
from email.message import EmailMessage
from datetime import timedelta
from typing import Optional, Dict, List, Tuple

from sqlalchemy.orm import Session

from ..config import settings
from ..logging import get_logger
from ..models.models import Notification, User, utcnow


logger = get_logger(__name__)


VISIT_TEMPLATES: Dict[str, Dict[str, str]] = {
    "submitted": {
        "type": "VISIT_REQUEST_SUBMITTED",
        "title": "Visit Request Submitted",
        "message": "Your visit request for {plot_title} has been submitted successfully. "
                   "You'll be notified once it's assigned to a manager.",
    },
    "assigned": {
        "type": "VISIT_REQUEST_ASSIGNED",
        "title": "New Visit Request Assignment",
        "message": "You have been assigned to handle a visit request for {plot_title}. Please review and accept/reject.",
    },
    "updated": {
        "type": "VISIT_REQUEST_UPDATED",
        "title": "Visit Request Updated",
        "message": "Your visit request has been assigned to manager {manager_name}. Waiting for manager's response.",
    },
    "approved": {
        "type": "VISIT_REQUEST_APPROVED",
        "title": "Visit Request Approved",
        "message": "Your visit request for {plot_title} has been approved. "
                   "You can now use the QR code to access the property.",
    },
    "rejected": {
        "type": "VISIT_REQUEST_REJECTED",
        "title": "Visit Request Rejected",
        "message": "Your visit request for {plot_title} has been rejected by the manager. Reason: {reason}",
    },
}


BUY_TEMPLATES: Dict[str, Dict[str, str]] = {
    "received": {
        "type": "BUY_REQUEST_UPDATED",
        "title": "New Buy Request",
        "message": "New buy request for {plot_title} - Plot {land_number}",
    },
    "assigned": {
        "type": "BUY_REQUEST_ASSIGNED",
        "title": "New Buy Request Assignment",
        "message": "You have been assigned to handle a buy request for {plot_title} - Plot {land_number}",
    },
    "updated": {
        "type": "BUY_REQUEST_UPDATED",
        "title": "Buy Request Updated",
        "message": "Your buy request has been assigned to manager {manager_name}",
    },
    "accepted": {
        "type": "BUY_REQUEST_ACCEPTED",
        "title": "Buy Request Accepted",
        "message": "Your buy request for {plot_title} - Plot {land_number} has been accepted. "
                   "The manager will contact you shortly.",
    },
    "rejected": {
        "type": "BUY_REQUEST_REJECTED",
        "title": "Buy Request Rejected",
        "message": "Your buy request for {plot_title} - Plot {land_number} has been rejected. Reason: {reason}",
    },
    "completed": {
        "type": "BUY_REQUEST_COMPLETED",
        "title": "Buy Request Completed",
        "message": "Your purchase of {plot_title} - Plot {land_number} has been completed.",
    },
}


def enqueue_notification(
    db: Session,
    user_id: uuid.UUID,
    notification_type: str,
    title: str,
    message: str,
) -> Optional[Notification]:
    """
    Append a pending notification for a user.

    Runs inside a SAVEPOINT so a failed insert only discards the notification,
    not the caller's pending changes.

    Returns:
        The Notification, or None when it could not be written
    """
    try:
        with db.begin_nested():
            notification = Notification(
                user_id=user_id,
                type=notification_type,
                title=title,
                message=message,
                read=False,
                status="pending",
            )
            db.add(notification)
            db.flush()
        return notification
    except Exception as e:
        logger.warning(
            "notification_enqueue_failed",
            user_id=str(user_id),
            type=notification_type,
            error=str(e),
        )
        return None


def send_visit_notification(db: Session, user_id: Optional[uuid.UUID], kind: str, **context) -> Optional[Notification]:
    """
    Notify a user about a visit-request transition.

    Args:
        db: Database session
        user_id: Recipient; guests without a linked user get nothing
        kind: submitted|assigned|updated|approved|rejected
        context: Values for the message template (plot_title, manager_name, reason)
    """
    return _send_templated(db, VISIT_TEMPLATES, user_id, kind, context)


def send_buy_notification(db: Session, user_id: Optional[uuid.UUID], kind: str, **context) -> Optional[Notification]:
    """Notify a user about a buy-request event (received|assigned|updated|accepted|rejected|completed)."""
    return _send_templated(db, BUY_TEMPLATES, user_id, kind, context)


def _send_templated(
    db: Session,
    templates: Dict[str, Dict[str, str]],
    user_id: Optional[uuid.UUID],
    kind: str,
    context: Dict[str, object],
) -> Optional[Notification]:
    if not user_id:
        return None
    template = templates[kind]
    try:
        message = template["message"].format(**context)
    except KeyError as e:
        logger.warning("notification_template_incomplete", kind=kind, missing=str(e))
        message = template["title"]
    return enqueue_notification(db, user_id, template["type"], template["title"], message)


def send_leave_notification(
    db: Session,
    user_id: uuid.UUID,
    approved: bool,
    start_date: str,
    end_date: str,
    reason: Optional[str] = None,
) -> Optional[Notification]:
    if approved:
        return enqueue_notification(
            db,
            user_id,
            "LEAVE_REQUEST_APPROVED",
            "Leave Request Approved",
            f"Your leave request from {start_date} to {end_date} has been approved.",
        )
    return enqueue_notification(
        db,
        user_id,
        "LEAVE_REQUEST_REJECTED",
        "Leave Request Rejected",
        f"Your leave request from {start_date} to {end_date} has been rejected. Reason: {reason}",
    )


def _email_enabled() -> bool:
    return bool(settings.enable_email and settings.smtp_host and settings.mail_from)


def send_email(to: str, subject: str, body: str) -> None:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.mail_from
    msg["To"] = to
    msg.set_content(body)
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as s:
        if settings.smtp_tls:
            s.starttls()
        if settings.smtp_username and settings.smtp_password:
            s.login(settings.smtp_username, settings.smtp_password)
        s.send_message(msg)


def _deliver(db: Session, notification: Notification) -> None:
    if not _email_enabled():
        return
    user = db.query(User).filter(User.id == notification.user_id).first()
    if user and user.email:
        send_email(user.email, notification.title, notification.message)


def _candidates(db: Session, limit: int) -> List[Tuple[uuid.UUID, str, int]]:
    """
    Snapshot (id, status, attempts) of rows due for delivery, oldest first.

    Due means pending, failed with attempts left, or stuck in sending past the
    claim lease (the worker holding it died). On Postgres the rows are locked
    with SKIP LOCKED so concurrent workers read disjoint batches.
    """
    max_attempts = settings.notification_max_attempts
    lease_cutoff = utcnow() - timedelta(seconds=settings.notification_claim_lease_s)
    query = (
        db.query(Notification.id, Notification.status, Notification.attempts)
        .filter(
            (Notification.status == "pending")
            | ((Notification.status == "failed") & (Notification.attempts < max_attempts))
            | (
                (Notification.status == "sending")
                & (Notification.claimed_at < lease_cutoff)
                & (Notification.attempts < max_attempts)
            )
        )
        .order_by(Notification.created_at.asc())
        .limit(limit)
    )
    if db.get_bind().dialect.name == "postgresql":
        query = query.with_for_update(skip_locked=True)
    return [(row.id, row.status, row.attempts or 0) for row in query.all()]


def _claim(db: Session, notification_id: uuid.UUID, status: str, attempts: int) -> bool:
    """Move one row to sending if it is still in the state it was read in."""
    rows = (
        db.query(Notification)
        .filter(
            Notification.id == notification_id,
            Notification.status == status,
            Notification.attempts == attempts,
        )
        .update(
            {"status": "sending", "attempts": attempts + 1, "claimed_at": utcnow()},
            synchronize_session=False,
        )
    )
    return rows == 1


def dispatch_pending(db: Session, batch: Optional[int] = None) -> Dict[str, int]:
    """
    Drain the outbox, oldest first.

    Due rows are first claimed (status "sending", attempts + 1) in one commit;
    a row another worker claimed in the meantime is skipped. Each claimed row
    is then delivered and marked sent, or failed with the error recorded.

    Returns:
        Counts of sent and failed notifications
    """
    limit = batch or settings.notification_dispatch_batch
    claimed: List[uuid.UUID] = []
    for notification_id, status, attempts in _candidates(db, limit):
        if _claim(db, notification_id, status, attempts):
            claimed.append(notification_id)
        else:
            logger.info("notification_claim_lost", notification_id=str(notification_id))
    db.commit()

    sent = failed = 0
    for notification_id in claimed:
        notification = db.get(Notification, notification_id)
        try:
            _deliver(db, notification)
        except Exception as e:
            notification.status = "failed"
            notification.error_message = str(e)
            failed += 1
            logger.warning("notification_delivery_failed", notification_id=str(notification_id), error=str(e))
        else:
            notification.status = "sent"
            notification.sent_at = utcnow()
            notification.error_message = None
            sent += 1
        db.commit()
    if claimed:
        logger.info("notifications_dispatched", sent=sent, failed=failed)
    return {"sent": sent, "failed": failed}


def start_dispatcher(session_factory, interval_s: Optional[int] = None) -> threading.Event:
    """Run dispatch_pending periodically in a daemon thread; set the returned event to stop it."""
    stop = threading.Event()
    interval = interval_s or settings.notification_dispatch_interval_s

    def _loop():
        while not stop.wait(interval):
            db = session_factory()
            try:
                dispatch_pending(db)
            except Exception as e:
                db.rollback()
                logger.error("notification_dispatcher_error", error=str(e))
            finally:
                db.close()

    thread = threading.Thread(target=_loop, name="notification-dispatcher", daemon=True)
    thread.start()
    return stop
