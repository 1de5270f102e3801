"""
Job scheduler — fires scheduled jobs on cron or interval triggers.

Each firing pulls from the job's data source, records an audit event,
enqueues a delivery item and posts the result to the job's target.
Every attempt leaves exactly one JobExecutionLog behind.
"""
import asyncio
import json
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.exc import SQLAlchemyError

from gateway.config import (
    DATA_SOURCE_TIMEOUT_SECONDS, DEFAULT_TIMEZONE, DELIVERY_TIMEOUT_SECONDS,
    MAX_CONCURRENT_RUNS, RETENTION_DAYS,
)
from gateway.database import SessionLocal
from gateway.errors import GatewayError, ValidationError
from gateway.models import JobExecutionLog
from services.data_source_service import DataSourceService, build_context, count_records, replace_variables
from services.delivery_service import HttpDeliveryTransport
from services.event_audit_service import (
    DELIVERED, DELIVERING, FAILED, MATCHED, RECEIVED, SKIPPED, TERMINAL_STATUSES, VALIDATED, EventAuditService,
)
from services.job_service import JobService, build_trigger, serialize_job, serialize_log
from services.notification_queue_service import NotificationQueueService

logger = logging.getLogger(__name__)

NOTIFICATION_TOPIC = "scheduled-job"
PURGE_JOB_KEY = "maintenance_purge_expired_events"


def _job_key(job_id: int) -> str:
    return f"job_{job_id}"


class JobScheduler:
    """Owns the live triggers of active scheduled jobs."""

    def __init__(self, transport=None, executor=None, max_concurrent: int = MAX_CONCURRENT_RUNS):
        self.scheduler = AsyncIOScheduler(timezone=DEFAULT_TIMEZONE)
        self.transport = transport or HttpDeliveryTransport()
        self.execute_data_source = executor or DataSourceService.execute_data_source
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._in_flight: Set[int] = set()
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start the scheduler and register every persisted active job."""
        self.scheduler.start()
        self._recover_stuck_runs()
        self._load_jobs_from_db()
        self.scheduler.add_job(
            self._purge_expired_events,
            trigger=CronTrigger(hour=3, minute=0, timezone=DEFAULT_TIMEZONE),
            id=PURGE_JOB_KEY,
            name="Purge expired audit events",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info(f"[SCHEDULER] Started with {len(self.scheduler.get_jobs())} triggers")

    def shutdown(self):
        for task in list(self._tasks):
            task.cancel()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("[SCHEDULER] Shutdown complete")

    def _load_jobs_from_db(self):
        for job in JobService.list_active_jobs():
            try:
                self.schedule_job(serialize_job(job))
            except ValidationError as e:
                logger.error(f"[SCHEDULER] Skipping job {job.id} '{job.name}' with invalid schedule: {e.message}")

    def _recover_stuck_runs(self):
        """Close RUNNING logs orphaned by a crash or restart."""
        session = SessionLocal()
        try:
            stale = session.query(JobExecutionLog).filter(
                JobExecutionLog.status == "RUNNING",
                JobExecutionLog.completed_at.is_(None),
            ).all()

            now = datetime.utcnow()
            for log in stale:
                log.status = "FAILED"
                log.completed_at = now
                log.error = {"message": "Recovered as failed on scheduler startup", "code": "INTERRUPTED"}

            if stale:
                session.commit()
                logger.warning(f"[SCHEDULER] Recovered {len(stale)} stale RUNNING execution log(s)")
        finally:
            session.close()

    async def _purge_expired_events(self):
        try:
            await asyncio.to_thread(EventAuditService.purge_expired_events, RETENTION_DAYS)
        except Exception as e:
            logger.error(f"[SCHEDULER] Retention purge failed: {e}")

    # ------------------------------------------------------------------
    # Trigger management
    # ------------------------------------------------------------------

    def schedule_job(self, job: Dict[str, Any]) -> bool:
        """
        Install the trigger for a serialized job, replacing any existing one.
        Inactive jobs are unscheduled instead. Raises ValidationError for a
        bad schedule.
        """
        if not job.get("isActive"):
            self.unschedule_job(job["id"])
            return False

        trigger = build_trigger(job["schedule"])
        self.scheduler.add_job(
            self._on_fire,
            trigger=trigger,
            id=_job_key(job["id"]),
            name=job["name"],
            args=[job["id"]],
            replace_existing=True,
            misfire_grace_time=60,
            coalesce=True,
            max_instances=1,
        )
        schedule = job["schedule"]
        logger.info(
            f"[SCHEDULER] Registered job {job['id']} '{job['name']}' "
            f"({schedule['type']} {schedule.get('expression') or schedule.get('intervalMs')})"
        )
        return True

    def unschedule_job(self, job_id: int) -> bool:
        job_key = _job_key(job_id)
        if self.scheduler.get_job(job_key):
            self.scheduler.remove_job(job_key)
            logger.info(f"[SCHEDULER] Removed job {job_id}")
            return True
        return False

    def is_scheduled(self, job_id: int) -> bool:
        return self.scheduler.get_job(_job_key(job_id)) is not None

    async def _on_fire(self, job_id: int):
        """APScheduler callback: hand the run to its own task and return."""
        self.dispatch(job_id, trigger="schedule")

    def dispatch(self, job_id: int, trigger: str = "manual") -> Optional[asyncio.Task]:
        """Start one execution in the background unless the job is already in flight."""
        if job_id in self._in_flight:
            logger.info(f"[SCHEDULER] Skip {trigger} run of job {job_id}: previous execution still in flight")
            return None

        self._in_flight.add(job_id)
        task = asyncio.create_task(self._run_guarded(job_id, trigger))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def trigger_job(self, job_id: int) -> bool:
        """Manual trigger. Returns False when the job is already running."""
        return self.dispatch(job_id, trigger="manual") is not None

    async def _run_guarded(self, job_id: int, trigger: str):
        try:
            async with self._semaphore:
                job = await asyncio.to_thread(JobService.load_job, job_id)
                if job is None:
                    logger.warning(f"[SCHEDULER] Job {job_id} no longer exists; removing trigger")
                    self.unschedule_job(job_id)
                    return
                if trigger == "schedule" and not job.is_active:
                    self.unschedule_job(job_id)
                    return
                await self.execute_job(serialize_job(job), trigger=trigger)
        except SQLAlchemyError as e:
            logger.error(f"[SCHEDULER] Storage error while running job {job_id}: {e}")
        finally:
            self._in_flight.discard(job_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _start_log(self, job: Dict[str, Any], correlation_id: str, trigger: str) -> int:
        session = SessionLocal()
        try:
            log = JobExecutionLog(
                integration_id=job["id"],
                org_id=job["orgId"],
                correlation_id=correlation_id,
                trigger=trigger,
                status="RUNNING",
                started_at=datetime.utcnow(),
            )
            session.add(log)
            session.commit()
            return log.id
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def _finish_log(self, log_id: int, **fields) -> Optional[Dict[str, Any]]:
        session = SessionLocal()
        try:
            log = session.get(JobExecutionLog, log_id)
            if log is None:
                # The job and its logs were deleted while the run was in flight
                logger.warning(f"[SCHEDULER] Execution log {log_id} disappeared before completion")
                return None
            for key, value in fields.items():
                setattr(log, key, value)
            log.completed_at = datetime.utcnow()
            session.commit()
            return serialize_log(log)
        finally:
            session.close()

    @staticmethod
    def _record_event(job: Dict[str, Any], payload: Dict[str, Any], event_type: str,
                      correlation_id: str, trigger: str) -> str:
        org_id = job["orgId"]
        record = EventAuditService.build_record(
            org_id=org_id,
            event_type=event_type,
            payload=payload,
            source=f"scheduled-job-{job['id']}",
            source_id=correlation_id,
            event_key=f"{event_type}-{correlation_id}-{org_id}",
            source_metadata={"jobId": job["id"], "trigger": trigger, "correlationId": correlation_id},
        )
        expected_interval = job["schedule"].get("intervalMs") if job["schedule"]["type"] == "INTERVAL" else None
        EventAuditService.record_event_audit(record, expected_interval_ms=expected_interval)
        event_id = record["event_id"]
        EventAuditService.update_event_audit(org_id, event_id, status=VALIDATED)
        EventAuditService.update_event_audit(
            org_id, event_id, status=MATCHED,
            details={"targetUrl": job["targetUrl"]},
            delivery_status={"integrationsMatched": 1},
        )
        return event_id

    @staticmethod
    def _enqueue(org_id: int, event_id: str, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        item = NotificationQueueService.enqueue_notification({
            "topic": NOTIFICATION_TOPIC,
            "transaction_type": event_type,
            "message": json.dumps(payload),
            "org_id": org_id,
            "org_unit_id": None,
            "event_id": event_id,
        })
        EventAuditService.update_event_audit(org_id, event_id, status=DELIVERING)
        return item

    @staticmethod
    def _complete_delivery(org_id: int, event_id: str, item_id: int, result) -> None:
        NotificationQueueService.mark_delivery_attempt(item_id, result.ok, result.error)
        if result.ok:
            EventAuditService.update_event_audit(
                org_id, event_id, status=DELIVERED,
                details={"responseStatus": result.status_code},
                delivery_status={"deliveredCount": 1, "failedCount": 0},
            )
        else:
            EventAuditService.update_event_audit(
                org_id, event_id, status=FAILED,
                details={"responseStatus": result.status_code, "error": result.error},
                delivery_status={"deliveredCount": 0, "failedCount": 1},
            )

    @staticmethod
    def _abandon_run(org_id: int, event_id: Optional[str], item_id: Optional[int],
                     attempt_recorded: bool, error: Dict[str, Any]) -> None:
        """Leave the audit event in a terminal status and count the lost delivery attempt."""
        if item_id is not None and not attempt_recorded:
            NotificationQueueService.mark_delivery_attempt(item_id, False, error["message"])
        if event_id is None:
            return

        status = EventAuditService.get_event_audit_by_id(org_id, event_id)["status"]
        if status in TERMINAL_STATUSES:
            return
        if status in (RECEIVED, VALIDATED):
            EventAuditService.update_event_audit(
                org_id, event_id, status=SKIPPED, details=error,
                skip_category="PROCESSING_ERROR", skip_reason=error["message"],
            )
            return
        if status == MATCHED:
            EventAuditService.update_event_audit(org_id, event_id, status=DELIVERING)
        EventAuditService.update_event_audit(
            org_id, event_id, status=FAILED, details=error,
            delivery_status={"deliveredCount": 0, "failedCount": 1},
        )

    async def execute_job(self, job: Dict[str, Any], trigger: str = "manual") -> Optional[Dict[str, Any]]:
        """
        Run one execution of a serialized job end to end and return its
        execution log, or None when the job vanished from storage. Failures
        are recorded, never raised.
        """
        correlation_id = uuid.uuid4().hex
        try:
            log_id = await asyncio.to_thread(self._start_log, job, correlation_id, trigger)
        except SQLAlchemyError as e:
            logger.warning(f"[SCHEDULER] Could not start run of job {job['id']} (deleted?): {e}")
            return None

        started = time.monotonic()
        org_id = job["orgId"]
        event_type = job.get("eventType") or "SCHEDULED_JOB_RESULT"

        status = "FAILED"
        stage = "data_source"
        records = None
        event_id = None
        item_id = None
        attempt_recorded = False
        response_status = None
        error = None

        logger.info(f"[SCHEDULER] Executing job {job['id']} '{job['name']}' ({trigger}, correlation={correlation_id})")
        try:
            context = build_context(org_id, job["id"], job["name"])
            data = await self.execute_data_source(
                job["dataSource"], context, job.get("timeoutSeconds") or DATA_SOURCE_TIMEOUT_SECONDS
            )
            records = count_records(data)

            stage = "audit"
            payload = {
                "data": data,
                "metadata": {
                    "jobId": job["id"],
                    "jobName": job["name"],
                    "executedAt": datetime.utcnow().isoformat(),
                    "recordCount": records,
                    "correlationId": correlation_id,
                },
            }
            # Data source rows may carry dates or decimals
            payload = json.loads(json.dumps(payload, default=str))
            event_id = await asyncio.to_thread(self._record_event, job, payload, event_type, correlation_id, trigger)

            stage = "enqueue"
            item = await asyncio.to_thread(self._enqueue, org_id, event_id, event_type, payload)
            item_id = item["id"]

            stage = "delivery"
            headers = replace_variables(job.get("headers") or {}, context)
            result = await asyncio.to_thread(
                self.transport.deliver,
                job["targetUrl"], job.get("httpMethod") or "POST", headers, payload, DELIVERY_TIMEOUT_SECONDS,
            )
            response_status = result.status_code
            attempt_recorded = True
            await asyncio.to_thread(self._complete_delivery, org_id, event_id, item_id, result)

            if result.ok:
                status = "SUCCESS"
            else:
                error = {"message": result.error, "code": "DELIVERY_FAILED", "stage": stage}
        except GatewayError as e:
            logger.error(f"[SCHEDULER] Job {job['id']} failed at {stage}: {e.message}")
            error = {"message": e.message, "code": e.code, "stage": stage}
        except Exception as e:
            logger.exception(f"[SCHEDULER] Job {job['id']} crashed at {stage}")
            error = {"message": str(e), "code": "INTERNAL_ERROR", "stage": stage}

        if error is not None and status == "FAILED" and (event_id is not None or item_id is not None):
            try:
                await asyncio.to_thread(self._abandon_run, org_id, event_id, item_id, attempt_recorded, error)
            except Exception:
                logger.exception(f"[SCHEDULER] Could not close out event {event_id} of job {job['id']}")

        duration_ms = int((time.monotonic() - started) * 1000)
        log = await asyncio.to_thread(
            self._finish_log,
            log_id,
            status=status,
            duration_ms=duration_ms,
            records_fetched=records,
            event_id=event_id,
            response_status=response_status,
            error=error,
        )
        logger.info(f"[SCHEDULER] Job {job['id']} finished: status={status}, duration={duration_ms}ms, records={records}")
        return log

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_next_run(self, job_id: int) -> Optional[str]:
        scheduled = self.scheduler.get_job(_job_key(job_id))
        next_run = getattr(scheduled, "next_run_time", None) if scheduled else None
        if next_run:
            return next_run.isoformat()
        return None

    def get_next_runs(self) -> list[dict]:
        result = []
        for job in self.scheduler.get_jobs():
            # Pending jobs have no next_run_time until the scheduler starts
            next_run = getattr(job, "next_run_time", None)
            result.append({
                "job_key": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
            })
        return result

    def get_status(self) -> dict:
        return {
            "running": self.scheduler.running,
            "triggers": len(self.scheduler.get_jobs()),
            "inFlight": sorted(self._in_flight),
            "nextRuns": self.get_next_runs(),
        }
