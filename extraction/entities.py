# extraction/entities.py
from datetime import datetime, timezone
from uuid import uuid4
from sqlalchemy.orm import Mapped, declarative_base, mapped_column
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
    JSON
)

from typing import TypeAlias
UUID: TypeAlias = str
Base = declarative_base()

# JSONB on Postgres, plain JSON anywhere else (sqlite in tests)
JsonDocument = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class ExtractionQueueItem(Base):
    __tablename__ = "extraction_queue"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False)

    # document | coaching_session | manual_note
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[UUID] = mapped_column(String(36), nullable=False)

    # the text as it was when queued; the source may change before we run
    content_snapshot: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # pending | processing | completed | failed | skipped
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
        server_default=text("'pending'"),
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    error_message: Mapped[str | None] = mapped_column(Text)

    # token of the claim currently holding the row; completion is CAS on it
    claimed_by: Mapped[str | None] = mapped_column(String(36))

    notes_created: Mapped[int | None] = mapped_column(Integer)
    nvq_metrics: Mapped[dict[str, object] | None] = mapped_column(JsonDocument)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint(
            "user_id", "source_type", "source_id", "content_hash",
            name="uq_extraction_queue_content",
        ),
        Index("ix_extraction_queue_pending", "status", "priority", "created_at"),
        Index("ix_extraction_queue_user_status", "user_id", "status"),
        Index("ix_extraction_queue_source", "source_type", "source_id"),
    )


class AtomicNote(Base, TimestampMixin):
    __tablename__ = "atomic_notes"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    source_document_id: Mapped[UUID | None] = mapped_column(String(36))

    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    # permanent | moc
    note_type: Mapped[str] = mapped_column(String(16), nullable=False, default="permanent")
    ai_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # NVQ quality fields
    nvq_score: Mapped[int | None] = mapped_column(Integer)
    nvq_breakdown: Mapped[dict[str, object] | None] = mapped_column(JsonDocument)
    nvq_evaluated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # pending | passing | needs_review | manual_override
    quality_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    refinement_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # structured metadata
    purpose_statement: Mapped[str | None] = mapped_column(Text)
    maturity_status: Mapped[str | None] = mapped_column(Text)
    content_type: Mapped[str | None] = mapped_column(Text)
    stakeholder: Mapped[str | None] = mapped_column(Text)
    project_link: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("ix_atomic_notes_user_id", "user_id"),
        Index("ix_atomic_notes_quality", "user_id", "quality_status"),
    )


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    # always stored lower-cased
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_tags_user_name"),
    )


class NoteTag(Base):
    __tablename__ = "note_tags"

    note_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("atomic_notes.id", ondelete="CASCADE"),
        primary_key=True,
    )
    tag_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("tags.id", ondelete="CASCADE"),
        primary_key=True,
    )


class NoteConnection(Base):
    __tablename__ = "note_connections"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    source_note_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("atomic_notes.id", ondelete="CASCADE"),
        nullable=False,
    )
    target_note_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("atomic_notes.id", ondelete="CASCADE"),
        nullable=False,
    )
    connection_type: Mapped[str] = mapped_column(Text, nullable=False, default="related")
    strength: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    ai_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("source_note_id", "target_note_id", name="uq_note_connections_pair"),
    )


class NoteSource(Base):
    __tablename__ = "note_sources"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    note_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("atomic_notes.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("note_id", "source_type", "source_id", name="uq_note_sources_link"),
    )


class NoteHistory(Base):
    __tablename__ = "note_history"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    note_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("atomic_notes.id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    changed_by: Mapped[str] = mapped_column(String(32), nullable=False, default="consolidation")
    source_id: Mapped[UUID | None] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    why_root: Mapped[str | None] = mapped_column(Text)
    # active | paused | completed | archived
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")


class Project(Base, TimestampMixin):
    __tablename__ = "projects"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_projects_user_id", "user_id"),
    )
