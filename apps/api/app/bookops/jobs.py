from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, select
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.bookops.models import Build, BookOpsJob, BookOpsJobArtifact, utcnow
from app.bookops.service import (
    ActorUser,
    actor_with_correlation_id,
    build_event,
    ensure_build_mutable,
    get_build_or_404,
    publish_all,
    require_capability,
    set_build_status,
)
from app.context import reset_build_id, reset_correlation_id, set_build_id, set_correlation_id
from app.core.rbac import Capability
from app.metrics import observe_job

logger = logging.getLogger("app.bookops.jobs")
tracer = trace.get_tracer("app.bookops.jobs")

JOB_CAPABILITIES = {
    "CSV_IMPORT": Capability.IMPORT_DATA,
    "CSV_EXPORT": Capability.EXPORT_DATA,
    "BUILD_RESET": Capability.RESET_BUILD,
}

JOB_ENTITIES = {
    "CSV_IMPORT": {"accounts", "opportunities", "sales_reps"},
    "CSV_EXPORT": {"accounts", "assignments"},
    "BUILD_RESET": {"build"},
}

TERMINAL_STATUSES = {"Succeeded", "Failed", "PartiallySucceeded", "Cancelled"}


class JobService:
    valid_job_types = set(JOB_CAPABILITIES)
    valid_statuses = {"Queued", "Running", *TERMINAL_STATUSES}

    def create_job(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        job_type: str,
        entity_type: str,
        build_id: uuid.UUID,
        params: dict[str, Any],
    ) -> BookOpsJob:
        if job_type not in self.valid_job_types:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid job_type")
        if entity_type not in JOB_ENTITIES[job_type]:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid entity_type")
        require_capability(actor_user, JOB_CAPABILITIES[job_type])
        build = get_build_or_404(session, build_id)
        if job_type != "CSV_EXPORT":
            ensure_build_mutable(build)

        job = BookOpsJob(
            job_type=job_type,
            entity_type=entity_type,
            build_id=build.id,
            status="Queued",
            requested_by_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
            params_json=json.dumps(params, default=str),
        )
        session.add(job)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="bookops.job",
            entity_id=str(job.id),
            action="create",
            before=None,
            after={"job_type": job.job_type, "entity_type": job.entity_type, "status": job.status},
            correlation_id=actor_user.correlation_id,
            build_id=str(build.id),
        )
        session.commit()
        return self._load_job(session, job.id)

    def run_job_sync(self, session: Session, actor_user: ActorUser, job_id: uuid.UUID) -> BookOpsJob:
        job = self._load_job(session, job_id)
        self._assert_job_access(actor_user, job)
        if job.status in TERMINAL_STATUSES:
            return job
        correlation_id = str(job.correlation_id or actor_user.correlation_id or "") or None
        runtime_actor = actor_with_correlation_id(actor_user, correlation_id)
        token = set_correlation_id(correlation_id)
        build_token = set_build_id(str(job.build_id) if job.build_id else None)
        started = time.perf_counter()
        final_status = "Failed"
        with tracer.start_as_current_span("bookops.job.run") as job_span:
            job_span.set_attribute("job_id", str(job.id))
            job_span.set_attribute("job_type", job.job_type)
            job_span.set_attribute("correlation_id", correlation_id or "")

            logger.info(
                "job.started",
                extra={
                    "job_id": str(job.id),
                    "job_type": job.job_type,
                    "status": "Running",
                    "duration_ms": 0.0,
                    "user_id": runtime_actor.user_id,
                },
            )

            try:
                job.status = "Running"
                job.started_at = utcnow()
                job.finished_at = None
                session.add(job)
                session.commit()

                try:
                    result = self._execute(session, runtime_actor, job)
                    job = self._load_job(session, job_id)
                    job.status = self._status_for(job, result)
                    job.result_json = json.dumps(result, default=str)
                    job.finished_at = utcnow()
                    session.add(job)
                    envelopes = self._after_success(session, runtime_actor, job, result)
                    session.commit()
                    publish_all(envelopes)
                    logger.info(
                        "job.finished",
                        extra={
                            "job_id": str(job.id),
                            "job_type": job.job_type,
                            "status": job.status,
                            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                            "user_id": runtime_actor.user_id,
                        },
                    )
                    final_status = job.status
                except Exception as exc:
                    session.rollback()
                    job = self._load_job(session, job_id)
                    job.status = "Failed"
                    job.finished_at = utcnow()
                    job.result_json = json.dumps(self._failure_result(exc), default=str)
                    session.add(job)
                    session.commit()
                    job_span.record_exception(exc)
                    job_span.set_status(Status(StatusCode.ERROR, str(exc)))
                    logger.info(
                        "job.finished",
                        extra={
                            "job_id": str(job.id),
                            "job_type": job.job_type,
                            "status": "Failed",
                            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                            "error": str(exc)[:500],
                            "user_id": runtime_actor.user_id,
                        },
                    )
                    events.publish(
                        build_event(
                            runtime_actor,
                            "bookops.job.failed",
                            job.build_id,
                            {"job_id": str(job.id), "job_type": job.job_type, "error": str(exc)[:500]},
                        )
                    )
                    final_status = "Failed"
            finally:
                duration = time.perf_counter() - started
                observe_job(job_type=job.job_type, status=final_status, duration=duration)
                reset_build_id(build_token)
                reset_correlation_id(token)

        return self._load_job(session, job_id)

    def cancel_job(self, session: Session, actor_user: ActorUser, job_id: uuid.UUID) -> BookOpsJob:
        from app.bookops.reset import request_cancel

        job = self.get_job(session, actor_user, job_id)
        if job.status in TERMINAL_STATUSES:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"job is already {job.status}")

        before = {"status": job.status, "cancel_requested": job.cancel_requested}
        job.cancel_requested = True
        if job.status == "Queued":
            job.status = "Cancelled"
            job.finished_at = utcnow()
            job.result_json = json.dumps({"status": "cancelled", "created_count": 0, "updated_count": 0, "error_count": 0})
        session.add(job)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="bookops.job",
            entity_id=str(job.id),
            action="cancel",
            before=before,
            after={"status": job.status, "cancel_requested": True},
            correlation_id=actor_user.correlation_id,
            build_id=str(job.build_id) if job.build_id else None,
        )
        session.commit()
        signalled = request_cancel(job.id)
        logger.info(
            "job.cancel_requested",
            extra={"job_id": str(job.id), "job_type": job.job_type, "status": job.status, "user_id": actor_user.user_id},
        )
        if signalled:
            logger.info("job.cancel_signalled", extra={"job_id": str(job.id)})
        return self._load_job(session, job_id)

    def get_job(self, session: Session, actor_user: ActorUser, job_id: uuid.UUID) -> BookOpsJob:
        job = self._load_job(session, job_id)
        self._assert_job_access(actor_user, job)
        return job

    def get_job_artifact(
        self,
        session: Session,
        actor_user: ActorUser,
        job_id: uuid.UUID,
        artifact_type: str,
    ) -> BookOpsJobArtifact:
        job = self.get_job(session, actor_user, job_id)
        artifact = session.scalar(
            select(BookOpsJobArtifact).where(
                and_(BookOpsJobArtifact.job_id == job.id, BookOpsJobArtifact.artifact_type == artifact_type)
            )
        )
        if artifact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="artifact not found")
        return artifact

    def to_response(self, job: BookOpsJob) -> dict[str, Any]:
        result_data: dict[str, Any] | None = None
        if job.result_json:
            result_data = json.loads(job.result_json)

        artifacts = [
            {
                "artifact_type": artifact.artifact_type,
                "file_id": str(artifact.file_id),
                "created_at": artifact.created_at.isoformat(),
            }
            for artifact in sorted(job.artifacts, key=lambda item: item.created_at)
        ]
        return {
            "id": str(job.id),
            "job_type": job.job_type,
            "entity_type": job.entity_type,
            "build_id": str(job.build_id) if job.build_id else None,
            "status": job.status,
            "cancel_requested": job.cancel_requested,
            "requested_by_user_id": job.requested_by_user_id,
            "correlation_id": job.correlation_id,
            "params": json.loads(job.params_json),
            "result": result_data,
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "finished_at": job.finished_at.isoformat() if job.finished_at else None,
            "created_at": job.created_at.isoformat(),
            "artifacts": artifacts,
        }

    def _execute(self, session: Session, actor_user: ActorUser, job: BookOpsJob) -> dict[str, Any]:
        if job.job_type == "BUILD_RESET":
            return self._run_reset(session, actor_user, job)

        from app.bookops.import_export import execute_job

        return execute_job(session, actor_user, job)

    def _run_reset(self, session: Session, actor_user: ActorUser, job: BookOpsJob) -> dict[str, Any]:
        from app.bookops.reset import register_cancel_token, release_cancel_token, run_build_reset

        job_id = job.id
        build = get_build_or_404(session, job.build_id)
        cancel_token = register_cancel_token(job_id)

        def cancel_check() -> bool:
            if cancel_token.is_set():
                return True
            return bool(session.scalar(select(BookOpsJob.cancel_requested).where(BookOpsJob.id == job_id)))

        try:
            return run_build_reset(session, actor_user, build, cancel_check=cancel_check)
        finally:
            release_cancel_token(job_id)

    def _status_for(self, job: BookOpsJob, result: dict[str, Any]) -> str:
        if result.get("status") == "cancelled":
            return "Cancelled"
        created_count = int(result.get("created_count", 0))
        updated_count = int(result.get("updated_count", 0))
        error_count = int(result.get("error_count", 0))
        if result.get("status") == "partial":
            return "PartiallySucceeded"
        if error_count > 0 and (created_count + updated_count) > 0:
            return "PartiallySucceeded"
        if error_count > 0:
            return "Failed"
        return "Succeeded"

    def _after_success(
        self,
        session: Session,
        actor_user: ActorUser,
        job: BookOpsJob,
        result: dict[str, Any],
    ) -> list[dict[str, Any]]:
        envelopes: list[dict[str, Any]] = []
        if job.job_type == "CSV_IMPORT" and job.build_id is not None:
            build = session.get(Build, job.build_id)
            changed = int(result.get("created_count", 0)) + int(result.get("updated_count", 0))
            if build is not None and build.status == "DRAFT" and changed > 0:
                status_event = set_build_status(session, actor_user, build, "IMPORTED")
                if status_event is not None:
                    envelopes.append(status_event)
        envelopes.append(
            build_event(
                actor_user,
                "bookops.job.finished",
                job.build_id,
                {"job_id": str(job.id), "job_type": job.job_type, "entity_type": job.entity_type, "status": job.status},
            )
        )
        return envelopes

    def _failure_result(self, exc: Exception) -> dict[str, Any]:
        from app.bookops.reset import ResetFailedError

        if isinstance(exc, ResetFailedError):
            return exc.to_result()
        if isinstance(exc, HTTPException):
            return {"error": str(exc.detail), "status_code": exc.status_code}
        return {"error": str(exc)}

    def _load_job(self, session: Session, job_id: uuid.UUID) -> BookOpsJob:
        job = session.scalar(
            select(BookOpsJob)
            .where(BookOpsJob.id == job_id)
            .options(selectinload(BookOpsJob.artifacts))
            .execution_options(populate_existing=True)
        )
        if job is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
        return job

    def _assert_job_access(self, actor_user: ActorUser, job: BookOpsJob) -> None:
        if actor_user.can(Capability.VIEW_ALL_DATA):
            return
        if job.requested_by_user_id != actor_user.user_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
