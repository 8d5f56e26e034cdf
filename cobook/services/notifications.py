"""
Notification outbox.
Events and user notifications are written as pending rows in the caller's
transaction; an external worker delivers them. Nothing here commits.
"""
from typing import Optional
import uuid
import structlog
from sqlalchemy.orm import Session

from ..models.models import Notification
from ..schemas.events import IntegrationEvent
from ..config import settings

logger = structlog.get_logger(__name__)


def should_send_notification(channel: str) -> bool:
    """
    Check if a channel is enabled globally.

    Args:
        channel: Notification channel (push|email|event)

    Returns:
        True if notification should be recorded
    """
    if channel == "push" and not settings.enable_push:
        return False
    if channel == "email" and not settings.enable_email:
        return False
    return True


def create_notification(
    db: Session,
    user_id: Optional[uuid.UUID],
    channel: str,
    template_key: Optional[str] = None,
    payload_json: Optional[dict] = None,
) -> Optional[Notification]:
    """
    Add a pending notification record to the session.

    Returns:
        Notification object if created, None if the channel is disabled
    """
    if not should_send_notification(channel):
        return None

    notification = Notification(
        user_id=user_id,
        channel=channel,
        template_key=template_key,
        payload_json=payload_json,
        status="pending",
    )
    db.add(notification)
    return notification


def publish_event(db: Session, user_id: Optional[uuid.UUID], event: IntegrationEvent) -> Notification:
    """Record an integration event in the outbox (fire-and-forget for the caller)."""
    notification = create_notification(
        db,
        user_id,
        "event",
        template_key=event.event_type,
        payload_json=event.model_dump(mode="json"),
    )
    logger.info("event_published", event_type=event.event_type, event_id=str(event.event_id))
    return notification


def notify_user(db: Session, user_id: uuid.UUID, notification_type: str, payload: dict) -> None:
    """
    Send a user-facing notification on push and email.

    Args:
        db: Database session
        user_id: User to notify
        notification_type: Template key, e.g. booking_cancelled_emergency
        payload: Data for the template
    """
    create_notification(db, user_id, "push", notification_type, payload)
    create_notification(db, user_id, "email", notification_type, payload)
