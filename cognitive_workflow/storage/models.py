"""SQLAlchemy database models for the catalog and observability reports."""

from datetime import datetime, timezone
from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, Text, UniqueConstraint
from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InstanceDefinitionModel(Base):
    """Catalog row for one node or workflow version."""
    __tablename__ = "instance_definitions"
    __table_args__ = (UniqueConstraint("instance_id", "version", name="uq_instance_version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(String, nullable=False, index=True)
    version = Column(String, nullable=False)
    kind = Column(String, nullable=False, index=True)  # node, workflow
    enabled = Column(Boolean, nullable=False, default=True)
    active = Column(Boolean, nullable=False, default=False)  # pinned for bare-id resolution
    definition = Column(JSON, nullable=False)  # Complete instance definition
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class IntentDefinitionModel(Base):
    """Catalog row for one intent."""
    __tablename__ = "intent_definitions"

    id = Column(String, primary_key=True)
    label = Column(String, nullable=False)
    workflow_id = Column(String, nullable=False)
    definition = Column(JSON, nullable=False)  # Utterances, embeddings and workflow binding
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class ObservabilityReportModel(Base):
    """One finalized report tree per request."""
    __tablename__ = "observability_reports"

    id = Column(String, primary_key=True)
    stage = Column(String, nullable=False)
    name = Column(String, nullable=False)
    success = Column(Boolean, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    duration_seconds = Column(Float, nullable=False)
    total_tokens = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    report = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
