from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx

from app.core.config import Settings, get_settings
from app.core.events import InProcessEventBus, InternalEvent
from app.metrics import observe_notification

logger = logging.getLogger("app.bookops.notifications")

NOTIFICATION_TYPES = (
    "proposal_approved",
    "proposal_rejected",
    "proposal_superseded",
    "review_assigned",
    "optimization_complete",
    "build_status",
    "error",
)

Message = tuple[str, str, str, str]


def build_payload(
    notification_type: str,
    recipient: str,
    title: str,
    message: str,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Webhook body; ``text`` and ``blocks`` keep it postable to a Slack incoming webhook."""
    return {
        "text": title,
        "blocks": [{"type": "section", "text": {"type": "mrkdwn", "text": f"*{title}*\n{message}"}}],
        "type": notification_type,
        "recipient": recipient,
        "title": title,
        "message": message,
        "metadata": metadata or {},
    }


def send_notification(
    notification_type: str,
    recipient: str,
    title: str,
    message: str,
    metadata: dict[str, Any] | None = None,
    *,
    settings: Settings | None = None,
) -> bool:
    resolved = settings or get_settings()
    if not resolved.notifications_enabled or not resolved.notification_webhook_url:
        observe_notification(notification_type, "skipped")
        return False

    payload = build_payload(notification_type, recipient, title, message, metadata)
    try:
        response = httpx.post(
            resolved.notification_webhook_url,
            json=payload,
            headers={"content-type": "application/json"},
            timeout=resolved.notification_timeout_seconds,
        )
        response.raise_for_status()
    except httpx.HTTPError:
        observe_notification(notification_type, "failed")
        logger.exception(
            "notification.failed",
            extra={"notification_type": notification_type, "user_id": recipient},
        )
        return False

    observe_notification(notification_type, "sent")
    logger.info("notification.sent", extra={"notification_type": notification_type, "user_id": recipient})
    return True


def _proposal_approved(envelope: dict[str, Any], payload: dict[str, Any]) -> Message:
    return (
        "proposal_approved",
        str(payload.get("recipient_user_id") or envelope.get("actor_user_id")),
        "Reassignment approved",
        f"{payload.get('account_name')} moves to {payload.get('proposed_owner_name')} in {payload.get('build_name')}.",
    )


def _proposal_rejected(envelope: dict[str, Any], payload: dict[str, Any]) -> Message:
    reason = f" Reason: {payload['reason']}" if payload.get("reason") else ""
    return (
        "proposal_rejected",
        str(payload.get("recipient_user_id") or envelope.get("actor_user_id")),
        "Reassignment rejected",
        f"Your proposal for {payload.get('account_name')} in {payload.get('build_name')} was rejected.{reason}",
    )


def _proposal_superseded(envelope: dict[str, Any], payload: dict[str, Any]) -> Message:
    return (
        "proposal_superseded",
        str(payload.get("recipient_user_id") or envelope.get("actor_user_id")),
        "Reassignment superseded",
        (
            f"Your proposal to move {payload.get('account_name')} to {payload.get('proposed_owner_name')} was "
            f"superseded: the account was approved for {payload.get('approved_owner_name')}."
        ),
    )


def _review_assigned(envelope: dict[str, Any], payload: dict[str, Any]) -> Message:
    queue = payload.get("approval_status") or "pending"
    return (
        "review_assigned",
        f"queue:{queue}",
        "Reassignment awaiting review",
        f"{payload.get('account_name')} in {payload.get('build_name')} is waiting in the {queue} queue.",
    )


def _optimization_complete(envelope: dict[str, Any], payload: dict[str, Any]) -> Message:
    return (
        "optimization_complete",
        str(envelope.get("actor_user_id")),
        "Assignments applied",
        (
            f"{payload.get('build_name')}: {payload.get('created_count', 0)} proposals created, "
            f"{payload.get('approved_count', 0)} approved, {payload.get('skipped_out_of_scope', 0)} out of scope."
        ),
    )


def _build_status(envelope: dict[str, Any], payload: dict[str, Any]) -> Message:
    return (
        "build_status",
        str(envelope.get("actor_user_id")),
        "Build status changed",
        f"{payload.get('build_name')} moved from {payload.get('from_status')} to {payload.get('to_status')}.",
    )


def _job_failed(envelope: dict[str, Any], payload: dict[str, Any]) -> Message:
    return (
        "error",
        str(envelope.get("actor_user_id")),
        "Job failed",
        f"{payload.get('job_type')} job {payload.get('job_id')} failed: {payload.get('error')}",
    )


EVENT_MESSAGES: dict[str, Callable[[dict[str, Any], dict[str, Any]], Message]] = {
    "bookops.proposal.approved": _proposal_approved,
    "bookops.proposal.rejected": _proposal_rejected,
    "bookops.proposal.superseded": _proposal_superseded,
    "bookops.proposal.created": _review_assigned,
    "bookops.proposal.advanced": _review_assigned,
    "bookops.assignments.applied": _optimization_complete,
    "bookops.build.status_changed": _build_status,
    "bookops.job.failed": _job_failed,
}

# engine applies announce these in one optimization_complete message
SUMMARIZED_FOR_ENGINE = frozenset({"bookops.proposal.created", "bookops.proposal.approved"})


def handle_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    builder = EVENT_MESSAGES.get(event.name)
    if builder is None:
        return
    envelope: dict[str, Any] = event.payload
    payload = envelope.get("payload") or {}
    if event.name in SUMMARIZED_FOR_ENGINE and payload.get("source") == "engine":
        return
    notification_type, recipient, title, message = builder(envelope, payload)
    send_notification(
        notification_type,
        recipient,
        title,
        message,
        {
            "event_id": envelope.get("event_id"),
            "event_type": event.name,
            "build_id": envelope.get("build_id"),
            "correlation_id": envelope.get("correlation_id"),
            **{key: value for key, value in payload.items() if isinstance(value, (str, int, float, bool))},
        },
    )


def register_notification_handlers(bus: InProcessEventBus) -> list[str]:
    for event_name in EVENT_MESSAGES:
        bus.subscribe(event_name, handle_event)
    return list(EVENT_MESSAGES)
