"""
Mailbox storage for Gmail sync pages.

Messages are keyed by (account_id, gmail_id); re-ingesting an overlapping
window rewrites the same rows.
"""

from datetime import datetime
import logging
from typing import Any, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert

from connectors.models import GmailThread
from models.database import get_session
from models.email import Email
from services.credentials import SessionFactory

logger = logging.getLogger(__name__)

_UPDATABLE_COLUMNS: tuple[str, ...] = (
    "thread_id",
    "from_email",
    "from_name",
    "to_emails",
    "cc_emails",
    "subject",
    "snippet",
    "body_text",
    "labels",
    "received_at",
    "synced_at",
)


def _email_row(account_id: str, message: GmailThread, now: datetime) -> dict[str, Any]:
    return {
        "account_id": account_id,
        "gmail_id": message.id,
        "thread_id": message.thread_id,
        "from_email": message.from_email,
        "from_name": message.from_name,
        "to_emails": list(message.to_emails),
        "cc_emails": list(message.cc_emails),
        "subject": message.subject,
        "snippet": message.snippet,
        "body_text": message.body_text,
        "labels": list(message.labels),
        "received_at": message.received_at,
        "synced_at": now,
    }


class EmailStore:
    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session_factory = session_factory

    async def upsert_messages(self, account_id: str, messages: Sequence[GmailThread]) -> int:
        if not messages:
            return 0
        now = datetime.utcnow()
        # One row per message id even if a page repeats one
        rows = list({m.id: _email_row(account_id, m, now) for m in messages}.values())

        async with self._session_factory() as session:
            stmt = pg_insert(Email.__table__).values(rows)
            await session.execute(
                stmt.on_conflict_do_update(
                    index_elements=["account_id", "gmail_id"],
                    set_={col: getattr(stmt.excluded, col) for col in _UPDATABLE_COLUMNS},
                )
            )
            await session.commit()

        logger.info("Stored %d Gmail messages for account %s", len(rows), account_id)
        return len(rows)
