"""SQLAlchemy ORM models for the empathy reconciler tables.

Column types are the portable SQLAlchemy 2.0 ones (Uuid, JSON with a
JSONB variant) so the same metadata runs on Postgres in production and
on SQLite in the test-suite. Row ids and timestamps are generated on the
Python side for the same reason.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB, "postgresql")


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Single declarative base for all reconciler tables."""

    pass


# =============================================================================
# Session membership & Stage 1 input
# =============================================================================


class Participant(Base):
    __tablename__ = "participants"
    __table_args__ = (UniqueConstraint("session_id", "user_id", name="uq_participants_session_user"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class SelfReport(Base):
    """What a partner said about their own feelings (Stage 1 witnessing)."""

    __tablename__ = "self_reports"
    __table_args__ = (UniqueConstraint("session_id", "user_id", name="uq_self_reports_session_user"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    feelings: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


# =============================================================================
# Reconciler state
# =============================================================================


class EmpathyAttempt(Base):
    __tablename__ = "empathy_attempts"
    __table_args__ = (
        UniqueConstraint("session_id", "guesser_id", name="uq_attempts_session_guesser"),
        CheckConstraint(
            "status IN ('drafting', 'held', 'analyzing', 'ready', 'awaiting_sharing', 'refining')",
            name="ck_attempts_status",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    guesser_id: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False)
    guessed_statement: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="drafting")
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    shared_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class ReconciliationResult(Base):
    __tablename__ = "reconciliation_results"
    __table_args__ = (
        CheckConstraint("gap_severity IN ('none', 'minor', 'significant')", name="ck_results_severity"),
        CheckConstraint(
            "recommended_action IN ('proceed', 'offer_optional_share', 'offer_sharing')",
            name="ck_results_action",
        ),
        # At most one current result per direction
        Index(
            "uq_results_current_direction",
            "session_id",
            "guesser_id",
            "subject_id",
            unique=True,
            postgresql_where=text("superseded_at IS NULL"),
            sqlite_where=text("superseded_at IS NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    guesser_id: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False)
    gap_severity: Mapped[str] = mapped_column(String(20), nullable=False)
    recommended_action: Mapped[str] = mapped_column(String(30), nullable=False)
    raw_analysis: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    alignment_score: Mapped[float | None] = mapped_column(Float)
    gap_summary: Mapped[str | None] = mapped_column(Text)
    degraded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    share_offer: Mapped["ShareOffer | None"] = relationship(
        back_populates="result", cascade="all, delete-orphan", uselist=False
    )


class ShareOffer(Base):
    __tablename__ = "share_offers"
    __table_args__ = (
        CheckConstraint(
            "subject_decision IN ('pending', 'accepted', 'declined')",
            name="ck_offers_decision",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reconciliation_result_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("reconciliation_results.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False)
    guesser_id: Mapped[str] = mapped_column(String(100), nullable=False)
    # NULL until the generator succeeds ("still preparing")
    suggested_content: Mapped[str | None] = mapped_column(Text)
    subject_decision: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    shared_content: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    result: Mapped["ReconciliationResult"] = relationship(back_populates="share_offer")


class SharedContextRecord(Base):
    """Durable fact that a subject shared context with a guesser.

    No foreign key to ContextMessage: deleting the chat message must
    never make the anti-loop guard forget the share.
    """

    __tablename__ = "shared_context_records"
    __table_args__ = (
        UniqueConstraint("session_id", "from_user_id", "to_user_id", name="uq_shared_context_direction"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    from_user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    to_user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    shared_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class ContextMessage(Base):
    """Chat-visible delivery of shared context. Ephemeral; may be deleted."""

    __tablename__ = "context_messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    sender_id: Mapped[str] = mapped_column(String(100), nullable=False)
    for_user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class NotificationEvent(Base):
    """Audit trail of published reconciler events."""

    __tablename__ = "notification_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
