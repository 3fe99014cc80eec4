"""ORM models for tenants, credentials, cost data, alerting and telemetry."""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)

from .database import Base

COST_DEDUP_KEY = ("project_id", "bucket_start", "bucket_end", "line_item", "api_version")
USAGE_DEDUP_KEY = ("project_id", "bucket_start", "bucket_end", "model", "api_version")


class Team(Base):
    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    slack_webhook_url = Column(String(512))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class TeamMember(Base):
    __tablename__ = "team_members"
    __table_args__ = (UniqueConstraint("team_id", "email", name="uq_team_members_team_email"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    email = Column(String(320), nullable=False)
    name = Column(String(200))


class OrganizationCredential(Base):
    __tablename__ = "organization_credentials"
    __table_args__ = (
        UniqueConstraint(
            "team_id",
            "provider",
            "organization_id",
            name="uq_organization_credentials_scope",
        ),
        Index("ix_organization_credentials_team_active", "team_id", "provider", "is_active"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False)
    organization_id = Column(String(128), nullable=False)
    ciphertext = Column(LargeBinary, nullable=False)
    wrapped_data_key = Column(LargeBinary, nullable=False)
    iv = Column(LargeBinary, nullable=False)
    key_last4 = Column(String(4))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (
        Index("ix_projects_org_scope", "team_id", "provider", "organization_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(200), nullable=False)
    provider = Column(String(32))
    organization_id = Column(String(128))
    provider_project_id = Column(String(128))


class CostRecord(Base):
    __tablename__ = "cost_records"
    __table_args__ = (
        UniqueConstraint(*COST_DEDUP_KEY, name="uq_cost_records_dedup"),
        Index("ix_cost_records_project_bucket", "project_id", "bucket_start"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False)
    line_item = Column(String(200), nullable=False)
    amount = Column(Numeric(18, 6), nullable=False)
    currency = Column(String(8), nullable=False, default="usd")
    bucket_start = Column(DateTime(timezone=True), nullable=False)
    bucket_end = Column(DateTime(timezone=True), nullable=False)
    api_version = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class TokenUsageRecord(Base):
    __tablename__ = "token_usage_records"
    __table_args__ = (
        UniqueConstraint(*USAGE_DEDUP_KEY, name="uq_token_usage_records_dedup"),
        Index("ix_token_usage_records_project_bucket", "project_id", "bucket_start"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False)
    model = Column(String(200), nullable=False)
    num_model_requests = Column(Integer, nullable=False, default=0)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    input_cached_tokens = Column(Integer, nullable=False, default=0)
    input_uncached_tokens = Column(Integer, nullable=False, default=0)
    input_text_tokens = Column(Integer, nullable=False, default=0)
    output_text_tokens = Column(Integer, nullable=False, default=0)
    input_cached_text_tokens = Column(Integer, nullable=False, default=0)
    input_audio_tokens = Column(Integer, nullable=False, default=0)
    input_cached_audio_tokens = Column(Integer, nullable=False, default=0)
    output_audio_tokens = Column(Integer, nullable=False, default=0)
    input_image_tokens = Column(Integer, nullable=False, default=0)
    input_cached_image_tokens = Column(Integer, nullable=False, default=0)
    output_image_tokens = Column(Integer, nullable=False, default=0)
    bucket_start = Column(DateTime(timezone=True), nullable=False)
    bucket_end = Column(DateTime(timezone=True), nullable=False)
    api_version = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AlertRule(Base):
    __tablename__ = "alert_rules"
    __table_args__ = (Index("ix_alert_rules_active", "is_active"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    window_kind = Column(String(16), nullable=False)
    limit_value = Column(Numeric(18, 6), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_fired_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CronExecution(Base):
    __tablename__ = "cron_executions"
    __table_args__ = (UniqueConstraint("job_name", "date", name="uq_cron_executions_job_date"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_name = Column(String(64), nullable=False)
    date = Column(String(10), nullable=False)
    executed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class NotificationThrottle(Base):
    __tablename__ = "notification_throttles"

    key = Column(String(200), primary_key=True)
    last_sent_at = Column(DateTime(timezone=True), nullable=False)


class OperationalEvent(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    level = Column(String(16), nullable=False)
    kind = Column(String(64), nullable=False)
    request_id = Column(String(64))
    team_id = Column(Integer)
    organization_id = Column(String(128))
    project_id = Column(Integer)
    message = Column(String(512))
    meta = Column(Text)

    __table_args__ = (
        Index("ix_events_ts", "ts"),
        Index("ix_events_kind_ts", "kind", "ts"),
    )
