"""Bulk reset of a build's assignments.

A reset deletes every proposal of the build, then clears ``new_owner_id`` and
``new_owner_name`` on accounts and on opportunities in small committed batches.
The two tables use different batching policies: accounts shrink the batch on
failure and fall back to a single-record attempt, opportunities drop to one
row at a time, skip rows that keep failing and stop the table (emergency
bypass) after repeated timeouts. Progress counts are always computed from rows
actually reset, so ``remaining`` matches what is left in the database.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from opentelemetry import trace
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.orm import Session

from app.bookops.models import Account, Build, ManagerNote, ManagerReassignment, Opportunity, utcnow
from app.bookops.service import ActorUser, build_event, ensure_build_mutable, publish_all, set_build_status
from app.core.config import Settings, get_settings
from app.metrics import observe_reset_batch, observe_reset_emergency_bypass
from app.otel import set_span_attributes

logger = logging.getLogger("app.bookops.reset")
tracer = trace.get_tracer("app.bookops.reset")

TIMEOUT_SQLSTATE = "57014"
ACCOUNTS = "accounts"
OPPORTUNITIES = "opportunities"


class ResetFailedError(Exception):
    def __init__(self, message: str, *, table: str, progress: dict[str, Any], retry_safe: bool = True) -> None:
        super().__init__(message)
        self.table = table
        self.progress = progress
        self.retry_safe = retry_safe

    def to_result(self) -> dict[str, Any]:
        hint = "Safe to retry: completed batches are kept and the reset resumes where it stopped." if self.retry_safe else None
        return {
            "error": str(self),
            "table": self.table,
            "retry_safe": self.retry_safe,
            "hint": hint,
            "progress": self.progress,
        }


def is_timeout_error(exc: BaseException) -> bool:
    if isinstance(exc, TimeoutError):
        return True
    original = getattr(exc, "orig", None)
    for candidate in (exc, original):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code == TIMEOUT_SQLSTATE:
            return True
    return "timeout" in str(exc).lower()


_cancel_tokens: dict[str, threading.Event] = {}
_cancel_lock = threading.Lock()


def register_cancel_token(job_id: uuid.UUID | str) -> threading.Event:
    with _cancel_lock:
        return _cancel_tokens.setdefault(str(job_id), threading.Event())


def request_cancel(job_id: uuid.UUID | str) -> bool:
    with _cancel_lock:
        token = _cancel_tokens.get(str(job_id))
    if token is None:
        return False
    token.set()
    return True


def release_cancel_token(job_id: uuid.UUID | str) -> None:
    with _cancel_lock:
        _cancel_tokens.pop(str(job_id), None)


class ResetStore(Protocol):
    def count_pending(self, table: str) -> int: ...

    def pending_ids(self, table: str, limit: int, exclude: Collection[Any]) -> list[Any]: ...

    def reset_batch(self, table: str, ids: list[Any]) -> int: ...

    def delete_proposals(self) -> int: ...

    def rollback(self) -> None: ...


class SqlResetStore:
    _models: dict[str, Any] = {ACCOUNTS: Account, OPPORTUNITIES: Opportunity}

    def __init__(self, session: Session, build_id: uuid.UUID) -> None:
        self.session = session
        self.build_id = build_id

    def count_pending(self, table: str) -> int:
        model = self._models[table]
        return int(
            self.session.scalar(
                select(func.count(model.id)).where(and_(model.build_id == self.build_id, model.new_owner_id.is_not(None)))
            )
            or 0
        )

    def pending_ids(self, table: str, limit: int, exclude: Collection[Any]) -> list[Any]:
        model = self._models[table]
        stmt = select(model.id).where(and_(model.build_id == self.build_id, model.new_owner_id.is_not(None)))
        if exclude:
            stmt = stmt.where(model.id.not_in(list(exclude)))
        return list(self.session.scalars(stmt.order_by(model.id).limit(limit)).all())

    def reset_batch(self, table: str, ids: list[Any]) -> int:
        model = self._models[table]
        values: dict[str, Any] = {"new_owner_id": None, "new_owner_name": None, "updated_at": utcnow()}
        if model is Account:
            values["row_version"] = Account.row_version + 1
        result = self.session.execute(
            update(model)
            .where(and_(model.id.in_(ids), model.new_owner_id.is_not(None)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return int(result.rowcount or 0)

    def delete_proposals(self) -> int:
        proposal_ids = select(ManagerReassignment.id).where(ManagerReassignment.build_id == self.build_id)
        self.session.execute(
            update(ManagerNote)
            .where(ManagerNote.reassignment_id.in_(proposal_ids))
            .values(reassignment_id=None)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(
            delete(ManagerReassignment)
            .where(ManagerReassignment.build_id == self.build_id)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return int(result.rowcount or 0)

    def rollback(self) -> None:
        self.session.rollback()


@dataclass(frozen=True, slots=True)
class BatchPolicy:
    table: str
    initial_batch_size: Callable[[int], int]
    delay_ms: Callable[[int], int]
    shrink: Callable[[int], int]
    backoff_multiplier: int
    on_exhausted: Literal["single_record", "skip"]
    skip_pause_ms: int = 0
    bypass_after: int | None = None


def account_batch_size(total: int) -> int:
    if total < 1_000:
        return 50
    if total < 10_000:
        return 200
    if total < 50_000:
        return 500
    return 1_000


def account_delay_ms(total: int) -> int:
    if total > 20_000:
        return 400
    if total > 5_000:
        return 300
    return 200


def opportunity_batch_size(total: int) -> int:
    return min(3, max(1, total // 100))


def opportunity_delay_ms(total: int) -> int:
    return 2_500 if total > 100 else 2_000


ACCOUNT_POLICY = BatchPolicy(
    table=ACCOUNTS,
    initial_batch_size=account_batch_size,
    delay_ms=account_delay_ms,
    shrink=lambda size: max(10, size // 2),
    backoff_multiplier=1,
    on_exhausted="single_record",
)

OPPORTUNITY_POLICY = BatchPolicy(
    table=OPPORTUNITIES,
    initial_batch_size=opportunity_batch_size,
    delay_ms=opportunity_delay_ms,
    shrink=lambda size: 1,
    backoff_multiplier=3,
    on_exhausted="skip",
    skip_pause_ms=3_000,
    bypass_after=3,
)


@dataclass(slots=True)
class TableProgress:
    table: str
    total: int
    processed: int = 0
    skipped: int = 0
    batches: int = 0
    cancelled: bool = False
    bypassed: bool = False
    skipped_ids: list[str] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return self.total - self.processed

    def as_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "total": self.total,
            "processed": self.processed,
            "remaining": self.remaining,
            "skipped": self.skipped,
            "batches": self.batches,
            "cancelled": self.cancelled,
            "emergency_bypass": self.bypassed,
        }


class BuildResetter:
    def __init__(
        self,
        store: ResetStore,
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        cancel_check: Callable[[], bool] | None = None,
        policies: tuple[BatchPolicy, ...] = (ACCOUNT_POLICY, OPPORTUNITY_POLICY),
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._cancel_check = cancel_check or (lambda: False)
        self.policies = policies

    def run(self) -> dict[str, Any]:
        result: dict[str, Any] = {"proposals_deleted": 0, "tables": {}, "status": "completed"}
        if self._cancel_check():
            result["status"] = "cancelled"
            return result

        result["proposals_deleted"] = self.delete_proposals()
        for policy in self.policies:
            progress = self.reset_table(policy)
            result["tables"][policy.table] = progress.as_dict()
            if progress.cancelled:
                result["status"] = "cancelled"
                break
            if progress.bypassed or progress.skipped or progress.remaining:
                result["status"] = "partial"
        return result

    def delete_proposals(self) -> int:
        max_attempts = self.settings.reset_max_retries
        for attempt in range(1, max_attempts + 1):
            try:
                return self.store.delete_proposals()
            except Exception as exc:
                self.store.rollback()
                timeout = is_timeout_error(exc)
                logger.warning(
                    "reset.delete_failed",
                    extra={"table": "manager_reassignments", "attempt": attempt, "error": str(exc)},
                )
                if not timeout:
                    raise ResetFailedError(
                        f"deleting proposals failed: {exc}",
                        table="manager_reassignments",
                        progress={"attempt": attempt},
                        retry_safe=False,
                    ) from exc
                if attempt == max_attempts:
                    raise ResetFailedError(
                        f"deleting proposals timed out after {attempt} attempts",
                        table="manager_reassignments",
                        progress={"attempt": attempt},
                    ) from exc
                self._sleep_ms(self.settings.reset_base_delay_ms * 2**attempt)
        return 0

    def reset_table(self, policy: BatchPolicy) -> TableProgress:
        total = self.store.count_pending(policy.table)
        progress = TableProgress(table=policy.table, total=total)
        batch_size = policy.initial_batch_size(total)
        skipped: set[Any] = set()
        consecutive_timeouts = 0

        while True:
            if self._cancel_check():
                progress.cancelled = True
                logger.info("reset.cancelled", extra=self._log_fields(progress))
                return progress

            ids = self.store.pending_ids(policy.table, batch_size, skipped)
            if not ids:
                break
            if progress.batches or progress.skipped:
                self._sleep_ms(policy.delay_ms(total))

            attempt = 0
            while True:
                try:
                    processed = self._reset_batch(policy.table, ids, attempt)
                    progress.processed += processed
                    progress.batches += 1
                    consecutive_timeouts = 0
                    observe_reset_batch(policy.table, "success")
                    break
                except Exception as exc:
                    self.store.rollback()
                    attempt += 1
                    timeout = is_timeout_error(exc)
                    logger.warning(
                        "reset.batch_failed",
                        extra={**self._log_fields(progress), "batch_size": len(ids), "attempt": attempt, "error": str(exc)},
                    )
                    if attempt <= self.settings.reset_max_retries:
                        observe_reset_batch(policy.table, "retry")
                        batch_size = policy.shrink(batch_size)
                        ids = ids[:batch_size]
                        self._sleep_ms(self._backoff_ms(attempt, policy.backoff_multiplier))
                        continue

                    if policy.on_exhausted == "single_record":
                        progress.processed += self._single_record(policy, ids[:1], progress, exc)
                        progress.batches += 1
                        break

                    if timeout:
                        consecutive_timeouts += 1
                    skipped.update(ids)
                    progress.skipped += len(ids)
                    progress.skipped_ids.extend(str(item) for item in ids)
                    observe_reset_batch(policy.table, "skipped")
                    if policy.bypass_after is not None and consecutive_timeouts >= policy.bypass_after:
                        progress.bypassed = True
                        observe_reset_emergency_bypass(policy.table)
                        logger.error("reset.emergency_bypass", extra=self._log_fields(progress))
                        return progress
                    self._sleep_ms(policy.skip_pause_ms)
                    break

        logger.info("reset.table_finished", extra=self._log_fields(progress))
        return progress

    def _reset_batch(self, table: str, ids: list[Any], attempt: int) -> int:
        with tracer.start_as_current_span("bookops.reset.batch") as span:
            set_span_attributes(span, table=table, batch_size=len(ids), attempt=attempt)
            return self.store.reset_batch(table, ids)

    def _single_record(self, policy: BatchPolicy, ids: list[Any], progress: TableProgress, cause: Exception) -> int:
        try:
            processed = self._reset_batch(policy.table, ids, self.settings.reset_max_retries + 1)
        except Exception as exc:
            self.store.rollback()
            observe_reset_batch(policy.table, "failed")
            logger.error("reset.failed", extra={**self._log_fields(progress), "error": str(exc)})
            raise ResetFailedError(
                f"resetting {policy.table} failed after {self.settings.reset_max_retries} retries: {cause}",
                table=policy.table,
                progress=progress.as_dict(),
            ) from exc
        observe_reset_batch(policy.table, "single_record")
        return processed

    def _backoff_ms(self, attempt: int, multiplier: int) -> int:
        delay = self.settings.reset_base_delay_ms * 2 ** (attempt - 1) * multiplier
        return min(delay, self.settings.reset_max_backoff_ms)

    def _sleep_ms(self, milliseconds: float) -> None:
        scaled = milliseconds * self.settings.reset_delay_scale
        if scaled > 0:
            self._sleep(scaled / 1000)

    def _log_fields(self, progress: TableProgress) -> dict[str, Any]:
        return {
            "table": progress.table,
            "processed": progress.processed,
            "total": progress.total,
            "remaining": progress.remaining,
        }


def run_build_reset(
    session: Session,
    actor_user: ActorUser,
    build: Build,
    *,
    cancel_check: Callable[[], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    ensure_build_mutable(build)
    build_id = build.id
    resetter = BuildResetter(SqlResetStore(session, build_id), sleep=sleep, cancel_check=cancel_check)
    with tracer.start_as_current_span("bookops.reset.run") as span:
        set_span_attributes(span, build_id=str(build_id))
        result = resetter.run()
        set_span_attributes(span, status=result["status"])

    envelopes: list[dict[str, Any]] = []
    if result["status"] == "completed" and all(item["remaining"] == 0 for item in result["tables"].values()):
        refreshed = session.get(Build, build_id)
        if refreshed is not None and refreshed.status != "DRAFT":
            status_event = set_build_status(session, actor_user, refreshed, "IMPORTED")
            if status_event is not None:
                envelopes.append(status_event)
    envelopes.append(
        build_event(
            actor_user,
            "bookops.build.reset",
            build_id,
            {"build_id": str(build_id), "status": result["status"], "tables": result["tables"]},
        )
    )
    session.commit()
    publish_all(envelopes)

    tables = result["tables"]
    processed = sum(item["processed"] for item in tables.values())
    total = sum(item["total"] for item in tables.values())
    result["created_count"] = 0
    result["updated_count"] = processed
    result["error_count"] = sum(item["skipped"] for item in tables.values())
    result["processed"] = processed
    result["total"] = total
    result["remaining"] = total - processed
    return result
