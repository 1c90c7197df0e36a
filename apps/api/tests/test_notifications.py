from __future__ import annotations

from collections.abc import Generator
from typing import Any

import httpx
import pytest

from app.bookops import notifications
from app.core.config import Settings, get_settings
from app.core.events import InProcessEventBus, InternalEvent

WEBHOOK_URL = "https://hooks.example.test/bookops"


@pytest.fixture()
def posted(monkeypatch: pytest.MonkeyPatch) -> Generator[list[dict[str, Any]], None, None]:
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "true")
    monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", WEBHOOK_URL)
    get_settings.cache_clear()
    calls: list[dict[str, Any]] = []

    def fake_post(url: str, **kwargs: Any) -> httpx.Response:
        calls.append({"url": url, **kwargs})
        return httpx.Response(200, request=httpx.Request("POST", url))

    monkeypatch.setattr(notifications.httpx, "post", fake_post)
    yield calls
    get_settings.cache_clear()


def _envelope(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_id": "evt-1",
        "event_type": event_type,
        "build_id": "build-1",
        "actor_user_id": "revops-1",
        "correlation_id": "corr-1",
        "payload": payload,
    }


def test_send_notification_skips_when_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail_post(*args: Any, **kwargs: Any) -> httpx.Response:
        raise AssertionError("webhook must not be called")

    monkeypatch.setattr(notifications.httpx, "post", fail_post)

    disabled = Settings(notifications_enabled=False, notification_webhook_url=WEBHOOK_URL)
    missing_url = Settings(notifications_enabled=True, notification_webhook_url=None)
    assert notifications.send_notification("error", "revops-1", "Job failed", "boom", settings=disabled) is False
    assert notifications.send_notification("error", "revops-1", "Job failed", "boom", settings=missing_url) is False


def test_send_notification_posts_slack_compatible_payload(posted: list[dict[str, Any]]) -> None:
    sent = notifications.send_notification(
        "proposal_approved",
        "flm-1",
        "Reassignment approved",
        "Acme moves to Rosa.",
        {"build_id": "build-1"},
    )

    assert sent is True
    assert len(posted) == 1
    call = posted[0]
    assert call["url"] == WEBHOOK_URL
    assert call["timeout"] == 10.0
    body = call["json"]
    assert body["text"] == "Reassignment approved"
    assert body["blocks"][0]["text"]["text"] == "*Reassignment approved*\nAcme moves to Rosa."
    assert body["recipient"] == "flm-1"
    assert body["metadata"] == {"build_id": "build-1"}


def test_send_notification_failure_is_logged_not_raised(
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    def broken_post(url: str, **kwargs: Any) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=httpx.Request("POST", url))

    monkeypatch.setattr(notifications.httpx, "post", broken_post)
    settings = Settings(notifications_enabled=True, notification_webhook_url=WEBHOOK_URL)

    with caplog.at_level("ERROR", logger="app.bookops.notifications"):
        sent = notifications.send_notification("error", "revops-1", "Job failed", "boom", settings=settings)

    assert sent is False
    assert any(record.getMessage() == "notification.failed" for record in caplog.records)


def test_send_notification_treats_error_status_as_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def server_error(url: str, **kwargs: Any) -> httpx.Response:
        return httpx.Response(502, request=httpx.Request("POST", url))

    monkeypatch.setattr(notifications.httpx, "post", server_error)
    settings = Settings(notifications_enabled=True, notification_webhook_url=WEBHOOK_URL)

    assert notifications.send_notification("error", "revops-1", "Job failed", "boom", settings=settings) is False


def test_rejected_event_notifies_proposer_with_reason(posted: list[dict[str, Any]]) -> None:
    envelope = _envelope(
        "bookops.proposal.rejected",
        {
            "recipient_user_id": "flm-1",
            "account_name": "Acme",
            "build_name": "FY27 AMER",
            "reason": "Territory mismatch",
            "proposal_id": "p-1",
            "details": {"ignored": True},
        },
    )
    notifications.handle_event(InternalEvent(name="bookops.proposal.rejected", payload=envelope))

    body = posted[0]["json"]
    assert body["type"] == "proposal_rejected"
    assert body["recipient"] == "flm-1"
    assert body["message"] == "Your proposal for Acme in FY27 AMER was rejected. Reason: Territory mismatch"
    assert body["metadata"]["event_type"] == "bookops.proposal.rejected"
    assert body["metadata"]["proposal_id"] == "p-1"
    assert "details" not in body["metadata"]


def test_registered_handlers_route_bus_events(posted: list[dict[str, Any]]) -> None:
    bus = InProcessEventBus()
    names = notifications.register_notification_handlers(bus)
    assert "bookops.proposal.superseded" in names
    assert "bookops.note.created" not in names

    delivered = bus.publish(
        "bookops.proposal.created",
        _envelope(
            "bookops.proposal.created",
            {"account_name": "Acme", "build_name": "FY27 AMER", "approval_status": "pending_slm"},
        ),
    )
    assert delivered == 1
    assert bus.publish("bookops.note.created", _envelope("bookops.note.created", {})) == 0

    body = posted[0]["json"]
    assert body["type"] == "review_assigned"
    assert body["recipient"] == "queue:pending_slm"
    assert body["message"] == "Acme in FY27 AMER is waiting in the pending_slm queue."
    assert len(posted) == 1


def test_engine_applied_proposals_notify_once_through_summary(posted: list[dict[str, Any]]) -> None:
    created = {"account_name": "Acme", "build_name": "FY27 AMER", "approval_status": "pending_slm", "source": "engine"}
    for _ in range(3):
        notifications.handle_event(
            InternalEvent(name="bookops.proposal.created", payload=_envelope("bookops.proposal.created", created))
        )
    notifications.handle_event(
        InternalEvent(
            name="bookops.proposal.approved",
            payload=_envelope("bookops.proposal.approved", {"account_name": "Acme", "source": "engine"}),
        )
    )
    assert posted == []

    notifications.handle_event(
        InternalEvent(
            name="bookops.assignments.applied",
            payload=_envelope(
                "bookops.assignments.applied",
                {"build_name": "FY27 AMER", "created_count": 3, "approved_count": 0, "skipped_out_of_scope": 1},
            ),
        )
    )
    assert len(posted) == 1
    body = posted[0]["json"]
    assert body["type"] == "optimization_complete"
    assert body["message"] == "FY27 AMER: 3 proposals created, 0 approved, 1 out of scope."

    manual = dict(created, source="manager")
    notifications.handle_event(
        InternalEvent(name="bookops.proposal.created", payload=_envelope("bookops.proposal.created", manual))
    )
    assert len(posted) == 2
    assert posted[1]["json"]["type"] == "review_assigned"
