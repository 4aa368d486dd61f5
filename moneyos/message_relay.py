from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone

from sqlalchemy import delete, insert, select

from moneyos.config import Settings
from moneyos.errors import AuthError, ValidationError
from moneyos.ledger_store import LedgerStore, pending_messages

logger = logging.getLogger("moneyos.relay")


def verify_push_secret(settings: Settings, provided: str | None) -> None:
    if not settings.sms_push_secret:
        raise AuthError("SMS push is not configured.")
    expected = settings.sms_push_secret.encode("utf-8")
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected):
        raise AuthError("Invalid push secret.")


def push_message(
    store: LedgerStore,
    body: str | None,
    sender: str | None = None,
    device_id: str | None = None,
    received_at: datetime | None = None,
) -> dict:
    if not body or not body.strip():
        raise ValidationError("Message body required.")
    if received_at is None:
        received_at = datetime.now(timezone.utc)
    if received_at.tzinfo is not None:
        received_at = received_at.astimezone(timezone.utc).replace(tzinfo=None)
    stmt = (
        insert(pending_messages)
        .values(
            body=body,
            sender=sender.strip() if sender else None,
            device_id=device_id.strip() if device_id else None,
            received_at=received_at,
        )
        .returning(*pending_messages.c)
    )
    with store.begin() as conn:
        row = conn.execute(stmt).mappings().first()
    logger.info("Queued message %s from device %s", row["id"], row["device_id"])
    return dict(row)


def pull_messages(store: LedgerStore, limit: int = 50) -> list[dict]:
    """Read and delete up to ``limit`` of the most recently received messages.

    Both steps share one store transaction, so a message is handed out at
    most once; a client that crashes after the response is sent loses it.
    """
    with store.begin() as conn:
        rows = conn.execute(
            select(pending_messages)
            .order_by(pending_messages.c.received_at.desc(), pending_messages.c.id.desc())
            .limit(limit)
        ).mappings().all()
        messages = [dict(row) for row in rows]
        if messages:
            conn.execute(
                delete(pending_messages).where(
                    pending_messages.c.id.in_([message["id"] for message in messages])
                )
            )
    if messages:
        logger.info("Delivered %s pending messages", len(messages))
    return messages
