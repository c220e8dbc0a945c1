from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orderdesk.domain.orders.repository import now_utc
from orderdesk.notifications.notifier import SentEmail
from orderdesk.persistence.models import EmailLogModel

logger = logging.getLogger(__name__)


def record_email(session: Session, order_id: str, sent: SentEmail) -> None:
    """Append an audit row for a customer e-mail; failures are only logged."""
    row = EmailLogModel(
        order_id=order_id,
        customer_email=sent.recipient,
        email_type=sent.email_type,
        subject=sent.subject,
        status="sent" if sent.receipt.delivered else "failed",
        provider_id=sent.receipt.provider_id,
        payload={"channel": sent.receipt.channel, "detail": sent.receipt.detail},
        created_at=now_utc(),
    )
    try:
        session.add(row)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("email log write failed: order_id=%s type=%s error=%s", order_id, sent.email_type, exc)


def list_emails(session: Session, order_id: str) -> list[EmailLogModel]:
    stmt = select(EmailLogModel).where(EmailLogModel.order_id == order_id).order_by(EmailLogModel.id.asc())
    return list(session.scalars(stmt).all())
