"""
Job Management Service — validation and persistence of scheduled jobs and
their execution logs. Live trigger state belongs to gateway.scheduler.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from gateway.config import DEFAULT_TIMEZONE, MIN_INTERVAL_MS
from gateway.database import SessionLocal
from gateway.errors import NotFoundError, ValidationError
from gateway.models import JobExecutionLog, ScheduledJob
from services.data_source_service import DATA_SOURCE_ADAPTERS

logger = logging.getLogger(__name__)

SCHEDULE_TYPES = ("CRON", "INTERVAL")
HTTP_METHODS = ("POST", "PUT", "PATCH")
LOG_STATUSES = ("RUNNING", "SUCCESS", "FAILED")

_DOW_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]
_DOW_PART = re.compile(r"(\*|[0-7])(?:-([0-7]))?(?:/(\d+))?")


def _cron_day_of_week(field: str) -> str:
    """
    Map crontab day numbers (0 or 7 = Sunday) to day names, expanding ranges
    and steps; APScheduler counts numeric days from Monday.
    Parts that are not numeric are passed through for CronTrigger to judge.
    """
    if field == "*":
        return field

    days = []
    passthrough = []
    for part in field.split(","):
        match = _DOW_PART.fullmatch(part)
        if not match or match.group(3) == "0" or (match.group(1) == "*" and match.group(2)):
            passthrough.append(part)
            continue
        if match.group(1) == "*":
            start, end = 0, 6
        else:
            start = int(match.group(1))
            # "N/step" runs to the end of the week
            end = int(match.group(2)) if match.group(2) else (6 if match.group(3) else start)
        if end < start:
            passthrough.append(part)
            continue
        step = int(match.group(3) or 1)
        for day in range(start, end + 1, step):
            if day % 7 not in days:
                days.append(day % 7)

    names = [_DOW_NAMES[d] for d in sorted(days)]
    return ",".join(names + passthrough)


def parse_cron(expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """Build a CronTrigger from a 5-field crontab or a 6-field (leading seconds) expression."""
    fields = (expression or "").split()
    tz = timezone or DEFAULT_TIMEZONE
    try:
        if len(fields) == 5:
            minute, hour, day, month, dow = fields
            return CronTrigger(minute=minute, hour=hour, day=day, month=month,
                               day_of_week=_cron_day_of_week(dow), timezone=tz)
        if len(fields) == 6:
            second, minute, hour, day, month, dow = fields
            return CronTrigger(second=second, minute=minute, hour=hour, day=day, month=month,
                               day_of_week=_cron_day_of_week(dow), timezone=tz)
    except (ValueError, KeyError, TypeError) as e:
        raise ValidationError("Invalid cron expression", details={"expression": expression, "reason": str(e)})
    raise ValidationError("Invalid cron expression", details={"expression": expression,
                                                              "reason": "expected 5 or 6 fields"})


def build_trigger(schedule: Dict[str, Any]):
    """Validate a schedule dict and return the APScheduler trigger for it."""
    if not schedule or not schedule.get("type"):
        raise ValidationError("Schedule configuration is required")

    schedule_type = str(schedule["type"]).upper()
    if schedule_type == "CRON":
        return parse_cron(schedule.get("expression"), schedule.get("timezone"))
    if schedule_type == "INTERVAL":
        interval_ms = schedule.get("intervalMs")
        if isinstance(interval_ms, bool) or not isinstance(interval_ms, (int, float)) or interval_ms < MIN_INTERVAL_MS:
            raise ValidationError(f"Interval must be at least {MIN_INTERVAL_MS}ms (1 minute)")
        timezone = schedule.get("timezone") or DEFAULT_TIMEZONE
        try:
            return IntervalTrigger(seconds=interval_ms / 1000, timezone=timezone)
        except (ValueError, KeyError, TypeError) as e:
            # ZoneInfoNotFoundError is a KeyError
            raise ValidationError("Invalid schedule timezone", details={"timezone": timezone, "reason": str(e)})
    raise ValidationError(f"Schedule type must be one of {', '.join(SCHEDULE_TYPES)}")


def validate_job_config(config: Dict[str, Any]):
    if not str(config.get("name") or "").strip():
        raise ValidationError("Job name is required")

    build_trigger(config.get("schedule"))

    data_source = config.get("dataSource")
    if not isinstance(data_source, dict) or not data_source.get("type"):
        raise ValidationError("Data source configuration is required")
    if str(data_source["type"]).upper() not in DATA_SOURCE_ADAPTERS:
        raise ValidationError(f"Unsupported data source type: {data_source['type']}",
                              details={"supported": sorted(DATA_SOURCE_ADAPTERS)})

    target_url = config.get("targetUrl")
    if not target_url:
        raise ValidationError("Target URL is required")
    if not re.match(r"^https?://", str(target_url)):
        raise ValidationError("Target URL must be an http(s) URL")

    method = str(config.get("httpMethod") or "POST").upper()
    if method not in HTTP_METHODS:
        raise ValidationError(f"httpMethod must be one of {', '.join(HTTP_METHODS)}")


def serialize_job(job: ScheduledJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "orgId": job.org_id,
        "name": job.name,
        "description": job.description,
        "direction": job.direction,
        "eventType": job.event_type,
        "schedule": {
            "type": job.schedule_type,
            "expression": job.cron_expression,
            "intervalMs": job.interval_ms,
            "timezone": job.timezone,
        },
        "dataSource": job.data_source,
        "targetUrl": job.target_url,
        "httpMethod": job.http_method,
        "headers": job.headers,
        "timeoutSeconds": job.timeout_seconds,
        "isActive": job.is_active,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "updatedAt": job.updated_at.isoformat() if job.updated_at else None,
    }


def serialize_log(log: JobExecutionLog, include_error: bool = True) -> Dict[str, Any]:
    data = {
        "id": log.id,
        "integrationId": log.integration_id,
        "orgId": log.org_id,
        "correlationId": log.correlation_id,
        "trigger": log.trigger,
        "status": log.status,
        "startedAt": log.started_at.isoformat() if log.started_at else None,
        "completedAt": log.completed_at.isoformat() if log.completed_at else None,
        "durationMs": log.duration_ms,
        "recordsFetched": log.records_fetched,
        "eventId": log.event_id,
        "responseStatus": log.response_status,
    }
    if include_error:
        data["error"] = log.error
    return data


def _apply_config(job: ScheduledJob, config: Dict[str, Any]):
    schedule = config["schedule"]
    schedule_type = str(schedule["type"]).upper()
    job.name = config["name"].strip()
    job.description = config.get("description")
    job.event_type = config.get("eventType") or "SCHEDULED_JOB_RESULT"
    job.schedule_type = schedule_type
    job.cron_expression = schedule.get("expression") if schedule_type == "CRON" else None
    job.interval_ms = int(schedule["intervalMs"]) if schedule_type == "INTERVAL" else None
    job.timezone = schedule.get("timezone") or DEFAULT_TIMEZONE
    job.data_source = {**config["dataSource"], "type": str(config["dataSource"]["type"]).upper()}
    job.target_url = config["targetUrl"]
    job.http_method = str(config.get("httpMethod") or "POST").upper()
    job.headers = config.get("headers") or {}
    job.timeout_seconds = config.get("timeoutSeconds")
    job.is_active = bool(config.get("isActive", True))


class JobService:
    @staticmethod
    def _find_job(session, org_id: int, job_id: int) -> ScheduledJob:
        job = session.query(ScheduledJob).filter(
            ScheduledJob.id == job_id,
            ScheduledJob.org_id == org_id,
        ).first()
        if not job:
            raise NotFoundError(f"Scheduled job {job_id} not found")
        return job

    @staticmethod
    def create_job(org_id: int, config: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and persist a new job. Scheduling is the caller's concern."""
        validate_job_config(config)
        session = SessionLocal()
        try:
            job = ScheduledJob(org_id=org_id, direction="SCHEDULED")
            _apply_config(job, config)
            session.add(job)
            session.commit()
            logger.info(f"[SCHEDULER] Created job {job.id} '{job.name}' for org={org_id}")
            return serialize_job(job)
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def update_job(org_id: int, job_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Merge changes over the stored job, revalidate and persist."""
        session = SessionLocal()
        try:
            job = JobService._find_job(session, org_id, job_id)
            merged = serialize_job(job)
            for key, value in changes.items():
                if key == "schedule" and isinstance(value, dict):
                    merged["schedule"] = {**merged["schedule"], **value}
                else:
                    merged[key] = value
            validate_job_config(merged)

            _apply_config(job, merged)
            job.updated_at = datetime.utcnow()
            session.commit()
            logger.info(f"[SCHEDULER] Updated job {job.id} '{job.name}'")
            return serialize_job(job)
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def delete_job(org_id: int, job_id: int):
        session = SessionLocal()
        try:
            job = JobService._find_job(session, org_id, job_id)
            session.delete(job)
            session.commit()
            logger.info(f"[SCHEDULER] Deleted job {job_id}")
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def get_job(org_id: int, job_id: int) -> Dict[str, Any]:
        session = SessionLocal()
        try:
            return serialize_job(JobService._find_job(session, org_id, job_id))
        finally:
            session.close()

    @staticmethod
    def load_job(job_id: int) -> Optional[ScheduledJob]:
        """Detached ORM instance for the scheduler, or None if it no longer exists."""
        session = SessionLocal()
        try:
            return session.get(ScheduledJob, job_id)
        finally:
            session.close()

    @staticmethod
    def list_active_jobs():
        session = SessionLocal()
        try:
            return session.query(ScheduledJob).filter(
                ScheduledJob.is_active == True,
                ScheduledJob.direction == "SCHEDULED",
            ).all()
        finally:
            session.close()

    @staticmethod
    def list_jobs(org_id: int):
        """All jobs of an org, newest first, with their latest execution."""
        session = SessionLocal()
        try:
            jobs = session.query(ScheduledJob).filter(
                ScheduledJob.org_id == org_id
            ).order_by(ScheduledJob.created_at.desc(), ScheduledJob.id.desc()).all()

            data = []
            for job in jobs:
                last_log = session.query(JobExecutionLog).filter_by(
                    integration_id=job.id
                ).order_by(JobExecutionLog.started_at.desc(), JobExecutionLog.id.desc()).first()

                item = serialize_job(job)
                item["lastExecution"] = {
                    "status": last_log.status,
                    "startedAt": last_log.started_at.isoformat() if last_log.started_at else None,
                    "completedAt": last_log.completed_at.isoformat() if last_log.completed_at else None,
                    "durationMs": last_log.duration_ms,
                    "recordsFetched": last_log.records_fetched,
                } if last_log else None
                data.append(item)
            return data
        finally:
            session.close()

    @staticmethod
    def get_job_logs(org_id: int, job_id: int, limit: int = 50, offset: int = 0, status: Optional[str] = None):
        session = SessionLocal()
        try:
            JobService._find_job(session, org_id, job_id)
            if status and status not in LOG_STATUSES:
                raise ValidationError(f"status must be one of {', '.join(LOG_STATUSES)}")

            query = session.query(JobExecutionLog).filter(JobExecutionLog.integration_id == job_id)
            if status:
                query = query.filter(JobExecutionLog.status == status)
            total = query.count()
            logs = query.order_by(
                JobExecutionLog.started_at.desc(), JobExecutionLog.id.desc()
            ).offset(offset).limit(min(limit, 500)).all()

            return {
                "logs": [serialize_log(log, include_error=False) for log in logs],
                "total": total,
                "limit": limit,
                "offset": offset,
            }
        finally:
            session.close()

    @staticmethod
    def get_job_log(org_id: int, job_id: int, log_id: int) -> Dict[str, Any]:
        session = SessionLocal()
        try:
            JobService._find_job(session, org_id, job_id)
            log = session.query(JobExecutionLog).filter(
                JobExecutionLog.id == log_id,
                JobExecutionLog.integration_id == job_id,
            ).first()
            if not log:
                raise NotFoundError(f"Execution log {log_id} not found")
            return serialize_log(log)
        finally:
            session.close()
