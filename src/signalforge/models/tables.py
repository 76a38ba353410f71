from __future__ import annotations
from datetime import datetime, date
import uuid
from sqlalchemy import String, Integer, DateTime, Date, JSON, ForeignKey, Float, Index, Text, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from signalforge.infrastructure.db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Workspace(Base):
    """Tenant. `settings` holds tenant-wide destination defaults (klaviyo_api_key, meta_pixel_id, ...)."""
    __tablename__ = "workspaces"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(128))
    settings: Mapped[dict] = mapped_column(JSON, default=dict)
    shopify_webhook_secret: Mapped[str | None] = mapped_column(String(256), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ApiKey(Base):
    __tablename__ = "api_keys"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(36), ForeignKey("workspaces.id"), index=True)
    name: Mapped[str | None] = mapped_column(String(128), default=None)
    key_prefix: Mapped[str] = mapped_column(String(16))
    key_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    scopes: Mapped[str] = mapped_column(String(256), default="collect|identify")  # '|' separated
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)


class UnifiedProfile(Base):
    __tablename__ = "unified_profiles"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(String(36), ForeignKey("workspaces.id"), index=True)
    primary_email: Mapped[str | None] = mapped_column(String(320), default=None, index=True)
    emails: Mapped[list] = mapped_column(JSON, default=list)
    phone: Mapped[str | None] = mapped_column(String(64), default=None)
    customer_ids: Mapped[list] = mapped_column(JSON, default=list)
    anonymous_ids: Mapped[list] = mapped_column(JSON, default=list)
    traits: Mapped[dict] = mapped_column(JSON, default=dict)
    computed: Mapped[dict] = mapped_column(JSON, default=dict)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_profile_workspace_last_seen", "workspace_id", "last_seen_at"),
    )


class IdentityLink(Base):
    __tablename__ = "identity_links"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(36), ForeignKey("workspaces.id"), index=True)
    identity_type: Mapped[str] = mapped_column(String(16))  # email|phone|customer_id|anonymous_id
    identity_value: Mapped[str] = mapped_column(String(320))
    profile_id: Mapped[str] = mapped_column(String(36), ForeignKey("unified_profiles.id"), index=True)
    source: Mapped[str | None] = mapped_column(String(32), default=None)
    confidence: Mapped[float] = mapped_column(Float, default=1.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_identity_link_unique", "workspace_id", "identity_type", "identity_value", unique=True),
    )


class Event(Base):
    __tablename__ = "events"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(String(36), ForeignKey("workspaces.id"), index=True)
    profile_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("unified_profiles.id"), index=True, default=None)
    event_type: Mapped[str] = mapped_column(String(32), index=True)
    event_name: Mapped[str] = mapped_column(String(256))
    properties: Mapped[dict] = mapped_column(JSON, default=dict)
    context: Mapped[dict] = mapped_column(JSON, default=dict)
    anonymous_id: Mapped[str | None] = mapped_column(String(128), index=True, default=None)
    session_id: Mapped[str | None] = mapped_column(String(128), default=None)
    source: Mapped[str] = mapped_column(String(16), default="js")  # js|server|webhook|test
    status: Mapped[str] = mapped_column(String(16), default="received", index=True)
    dedupe_key: Mapped[str] = mapped_column(String(64))
    dupe_count: Mapped[int] = mapped_column(Integer, default=0)
    consent: Mapped[dict | None] = mapped_column(JSON, default=None)
    event_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_event_dedupe_unique", "workspace_id", "dedupe_key", unique=True),
        Index("ix_event_workspace_anon", "workspace_id", "anonymous_id"),
    )


class Destination(Base):
    __tablename__ = "destinations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(36), ForeignKey("workspaces.id"), index=True)
    type: Mapped[str] = mapped_column(String(32))  # klaviyo|meta
    name: Mapped[str | None] = mapped_column(String(128), default=None)
    config: Mapped[dict] = mapped_column(JSON, default=dict)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class SyncJob(Base):
    __tablename__ = "sync_jobs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(36), ForeignKey("workspaces.id"), index=True)
    destination_id: Mapped[int] = mapped_column(Integer, ForeignKey("destinations.id"), index=True)
    profile_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("unified_profiles.id"), index=True, default=None)
    event_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("events.id"), default=None)
    job_type: Mapped[str] = mapped_column(String(32))  # profile_upsert|event_track
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)  # pending|running|completed|failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_sync_job_event_destination", "event_id", "destination_id", unique=True),
        Index("ix_sync_job_due", "status", "scheduled_at"),
    )


class PredictiveSignal(Base):
    __tablename__ = "predictive_signals"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(36), ForeignKey("workspaces.id"), index=True)
    profile_id: Mapped[str] = mapped_column(String(36), ForeignKey("unified_profiles.id"), index=True)
    signal_type: Mapped[str] = mapped_column(String(64))
    confidence: Mapped[int] = mapped_column(Integer)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    flow_name: Mapped[str | None] = mapped_column(String(128), default=None)
    should_trigger_flow: Mapped[bool] = mapped_column(Boolean, default=False)
    flow_triggered_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_signal_unique", "workspace_id", "profile_id", "signal_type", unique=True),
    )


class BillingUsage(Base):
    __tablename__ = "billing_usage"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(36), ForeignKey("workspaces.id"), index=True)
    period_start: Mapped[date] = mapped_column(Date)
    events_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_billing_period_unique", "workspace_id", "period_start", unique=True),
    )
