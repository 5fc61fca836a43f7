"""Read-only queries over build session history."""

from sqlalchemy import select
from sqlalchemy.orm import Session

from imageforge.errors import ImageForgeError
from imageforge.ledger.models import BuildSessionRecord, LedgerEntry
from imageforge.types import SessionStatus


class SessionNotFoundError(ImageForgeError):
    """Raised when a build session record does not exist."""

    def __init__(self, session_id: str, code: str = "session_not_found") -> None:
        super().__init__(f"Build session not found: {session_id}", code)
        self.session_id = session_id


def get_session_record(session: Session, session_id: str) -> BuildSessionRecord:
    """Get a build session record by session ID or unique prefix.

    Args:
        session: Database session.
        session_id: Full session ID or a prefix of at least 4 chars.

    Returns:
        BuildSessionRecord instance.

    Raises:
        SessionNotFoundError: If no single session matches.
    """
    record = session.execute(
        select(BuildSessionRecord).where(BuildSessionRecord.session_id == session_id)
    ).scalar_one_or_none()
    if record is not None:
        return record

    if len(session_id) >= 4:
        matches = list(
            session.execute(
                select(BuildSessionRecord)
                .where(BuildSessionRecord.session_id.startswith(session_id))
                .limit(2)
            ).scalars()
        )
        if len(matches) == 1:
            return matches[0]

    raise SessionNotFoundError(session_id)


def list_sessions(
    session: Session,
    status: SessionStatus | None = None,
    fingerprint: str | None = None,
    limit: int = 50,
) -> list[BuildSessionRecord]:
    """List build session records, newest first.

    Args:
        session: Database session.
        status: Filter by status.
        fingerprint: Filter by configuration fingerprint key.
        limit: Maximum results to return.

    Returns:
        List of BuildSessionRecord instances.
    """
    stmt = select(BuildSessionRecord)

    if status is not None:
        stmt = stmt.where(BuildSessionRecord.status == status.value)
    if fingerprint is not None:
        stmt = stmt.where(BuildSessionRecord.fingerprint == fingerprint)

    stmt = stmt.order_by(BuildSessionRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def list_outstanding_entries(session: Session) -> list[LedgerEntry]:
    """List ledger entries that were never deregistered."""
    stmt = select(LedgerEntry).order_by(LedgerEntry.id)
    return list(session.execute(stmt).scalars().all())


__all__ = [
    "SessionNotFoundError",
    "get_session_record",
    "list_outstanding_entries",
    "list_sessions",
]
