"""
SQLAlchemy models for the event audit trail, the scheduled job engine
and the outbound notification queue.
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Float, Text, DateTime, JSON,
    Boolean, ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


# ============================================================================
# Event Audit Models
# ============================================================================

class EventAudit(Base):
    """Durable record of one ingested event and its delivery lifecycle."""
    __tablename__ = "event_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(200), nullable=False, unique=True)
    org_id = Column(Integer, nullable=False)
    source = Column(String(120), nullable=False)              # http_push, scheduled-job-7, BULK_IMPORT
    source_id = Column(String(200))
    event_type = Column(String(120), nullable=False)
    event_key = Column(String(400), nullable=False)           # dedup key, unique per org

    payload_hash = Column(String(64), nullable=False)
    payload_size = Column(Integer, default=0)
    payload_summary = Column(JSON)                            # redacted projection
    payload = Column(JSON)
    source_metadata = Column(JSON)

    status = Column(String(20), nullable=False, default="RECEIVED")
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    received_at_bucket = Column(DateTime, nullable=False)
    timeline = Column(JSON, nullable=False, default=list)

    integrations_matched = Column(Integer, default=0)
    delivered_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)

    skip_category = Column(String(60))
    skip_reason = Column(Text)
    processing_time_ms = Column(Integer)
    search_text = Column(Text)                                # lowercased haystack for free-text search

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("org_id", "event_key", name="uq_event_audit_org_key"),
        Index("ix_event_audit_org_bucket", "org_id", "received_at_bucket"),
        Index("ix_event_audit_org_received", "org_id", "received_at"),
        Index("ix_event_audit_org_source_received", "org_id", "source", "received_at"),
        Index("ix_event_audit_org_status", "org_id", "status"),
    )

    def __repr__(self):
        return f"<EventAudit {self.event_id} ({self.status})>"


class SourceCheckpoint(Base):
    """Last-known-good ingestion marker per (org, source)."""
    __tablename__ = "source_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    org_id = Column(Integer, nullable=False)
    source = Column(String(120), nullable=False)
    last_seen_at = Column(DateTime, nullable=False)
    last_seen_event_id = Column(String(200))
    expected_interval_ms = Column(Integer)                    # Optional cadence hint
    events_seen = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("org_id", "source", name="uq_source_checkpoint_org_source"),
    )


# ============================================================================
# Scheduler Models
# ============================================================================

class ScheduledJob(Base):
    """A tenant-owned, cron- or interval-triggered data pull with a delivery target."""
    __tablename__ = "scheduled_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    org_id = Column(Integer, nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    direction = Column(String(20), nullable=False, default="SCHEDULED")
    event_type = Column(String(120))

    schedule_type = Column(String(20), nullable=False)        # CRON, INTERVAL
    cron_expression = Column(String(100))                     # e.g. "0 6 * * *"
    interval_ms = Column(Integer)
    timezone = Column(String(60))

    data_source = Column(JSON, nullable=False)                # {"type": "API", "url": ...}
    target_url = Column(String(1000), nullable=False)
    http_method = Column(String(10), default="POST", nullable=False)
    headers = Column(JSON)
    timeout_seconds = Column(Float)                           # Data source bound

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    logs = relationship("JobExecutionLog", back_populates="job", cascade="all, delete-orphan",
                        order_by="JobExecutionLog.started_at.desc()")

    __table_args__ = (
        Index("ix_scheduled_jobs_org", "org_id"),
        Index("ix_scheduled_jobs_active", "is_active"),
    )

    def __repr__(self):
        return f"<ScheduledJob {self.name} ({self.schedule_type})>"


class JobExecutionLog(Base):
    """One execution attempt of a scheduled job."""
    __tablename__ = "job_execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration_id = Column(Integer, ForeignKey("scheduled_jobs.id", ondelete="CASCADE"), nullable=False)
    org_id = Column(Integer, nullable=False)
    correlation_id = Column(String(64), nullable=False)
    trigger = Column(String(20), default="schedule")          # schedule, manual
    status = Column(String(20), default="RUNNING", nullable=False)  # RUNNING, SUCCESS, FAILED
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)
    records_fetched = Column(Integer)
    event_id = Column(String(200))
    response_status = Column(Integer)
    error = Column(JSON)                                      # {"message", "code", "stage"}

    job = relationship("ScheduledJob", back_populates="logs")

    __table_args__ = (
        Index("ix_job_execution_logs_job_started", "integration_id", "started_at"),
        Index("ix_job_execution_logs_status", "status"),
    )


# ============================================================================
# Notification Queue
# ============================================================================

class NotificationQueueItem(Base):
    """A delivery work item waiting for a downstream consumer."""
    __tablename__ = "notification_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic = Column(String(120), nullable=False)
    transaction_type = Column(String(120), nullable=False)
    message = Column(Text, nullable=False)
    org_id = Column(Integer, nullable=False)
    org_unit_id = Column(Integer)
    event_id = Column(String(200))
    status = Column(String(20), nullable=False, default="PENDING")  # PENDING, DELIVERED, FAILED
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    delivered_at = Column(DateTime)
    last_checked_at = Column(DateTime)

    __table_args__ = (
        Index("ix_notification_queue_org_status", "org_id", "status"),
    )
