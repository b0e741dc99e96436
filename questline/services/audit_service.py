"""
questline.services.audit_service — XP Audit Trail
==================================================

Appends one ``xp_transactions`` row per XP-affecting event.  The trail is
append-only: nothing in the codebase updates or deletes these rows.

Appends run in their own transaction *after* the award has committed, so
an audit failure can never roll back or block a reward.  Callers treat a
raised :class:`~sqlalchemy.exc.SQLAlchemyError` as a degraded step.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from questline.constants import XpSource
from questline.database.engine import get_session
from questline.database.models import XpTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AuditEntry:
    account_id: str
    amount: int
    source: XpSource
    source_id: str
    metadata: dict = field(default_factory=dict)


def append_transactions(engine: Engine, entries: Iterable[AuditEntry]) -> int:
    """Insert *entries* in one transaction.  Returns the number written."""
    rows = [
        XpTransaction(
            account_id=e.account_id,
            amount=e.amount,
            source=str(e.source),
            source_id=str(e.source_id),
            metadata_=e.metadata or None,
        )
        for e in entries
    ]
    if not rows:
        return 0
    with get_session(engine) as session:
        session.add_all(rows)
    logger.debug("Audit: appended %d xp_transactions", len(rows))
    return len(rows)


def list_transactions(engine: Engine, account_id: str, limit: int = 100) -> list[dict]:
    """Most recent audit rows for *account_id*, newest first."""
    with Session(engine) as session:
        rows = session.scalars(
            select(XpTransaction)
            .where(XpTransaction.account_id == account_id)
            .order_by(XpTransaction.id.desc())
            .limit(limit)
        ).all()
        return [
            {
                "id": r.id,
                "amount": r.amount,
                "source": r.source,
                "source_id": r.source_id,
                "timestamp": r.timestamp.isoformat() if r.timestamp else None,
            }
            for r in rows
        ]
