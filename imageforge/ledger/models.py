"""Ledger ORM models.

This module defines the BuildSessionRecord and LedgerEntry models that make
build sessions and their external resources durable across crashes.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from imageforge.db import Base
from imageforge.types import SessionStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BuildSessionRecord(Base):
    """ORM model for one build attempt.

    Attributes:
        id: Primary key.
        session_id: Unique session identifier (hex).
        fingerprint: Configuration fingerprint key.
        status: Session status (running, succeeded, failed, aborted).
        started_at: Session start time.
        finished_at: Session end time.
        work_dir: Per-session working directory.
        failed_stage: Stage that failed, if any.
        error_code: Error code of the terminal failure.
        error_message: Terminal failure message.
        cache_hit: Whether the base volume came from the cache.
        artifact_path: Path of the finished artifact.
        summary: JSON summary (partial failures, release warnings).
    """

    __tablename__ = "build_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    fingerprint: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SessionStatus.RUNNING.value, index=True
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    work_dir: Mapped[str] = mapped_column(String(500), nullable=False)
    failed_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cache_hit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    artifact_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    summary: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)

    entries: Mapped[list["LedgerEntry"]] = relationship(
        "LedgerEntry", back_populates="session", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        """Return string representation of BuildSessionRecord."""
        return (
            f"<BuildSessionRecord(session_id='{self.session_id}', "
            f"status='{self.status}', fingerprint='{self.fingerprint[:16]}...')>"
        )

    def mark_finished(
        self,
        status: SessionStatus,
        failed_stage: str | None = None,
        error_code: str | None = None,
        message: str | None = None,
    ) -> None:
        """Record the terminal status of this session.

        Args:
            status: Terminal status.
            failed_stage: Stage that failed, if any.
            error_code: Error code of the failure.
            message: Error message details.
        """
        self.status = status.value
        self.finished_at = _utcnow()
        if failed_stage:
            self.failed_stage = failed_stage
        if error_code:
            self.error_code = error_code
        if message:
            self.error_message = message

    def is_finished(self) -> bool:
        """Check if this session reached a terminal status."""
        return self.status != SessionStatus.RUNNING.value


class LedgerEntry(Base):
    """ORM model for one registered external resource.

    Attributes:
        id: Primary key.
        session_pk: Foreign key to BuildSessionRecord.
        kind: Resource kind.
        resource_key: Stable key of the handle.
        payload: JSON payload to rebuild the handle.
        registered_at: Registration time.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_pk: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_sessions.id"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    resource_key: Mapped[str] = mapped_column(String(500), nullable=False)
    payload: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False)
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    session: Mapped["BuildSessionRecord"] = relationship(
        "BuildSessionRecord", back_populates="entries"
    )

    __table_args__ = (
        UniqueConstraint("session_pk", "kind", "resource_key", name="uq_ledger_resource"),
        Index("ix_ledger_entries_kind", "kind"),
    )

    def __repr__(self) -> str:
        """Return string representation of LedgerEntry."""
        return f"<LedgerEntry(kind='{self.kind}', key='{self.resource_key}')>"


__all__ = ["BuildSessionRecord", "LedgerEntry"]
