"""API tests through the ASGI app with the store and services overridden."""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from foundmatch.api.deps import (
    get_feedback_service,
    get_lifecycle,
    get_matching_service,
    get_publisher,
)
from foundmatch.database import get_db
from foundmatch.main import app
from foundmatch.services.event_publisher import EventPublisher
from foundmatch.services.feedback_service import FeedbackService
from foundmatch.services.lifecycle_service import MatchLifecycle
from foundmatch.services.matching_service import PipelineResult

API = "/api/v1"


@pytest.fixture
def matching_service():
    service = MagicMock()
    service.process_photo_ready = AsyncMock(
        side_effect=lambda event: PipelineResult(photo_id=event.photo_id, status="matched")
    )
    service.process_case_closed = AsyncMock(return_value=3)
    return service


@pytest.fixture
async def client(session_factory, fake_redis, matching_service):
    async def _get_db():
        async with session_factory() as session:
            yield session

    lifecycle = MatchLifecycle(alert_sides=["target"], retention_days=30)
    feedback_service = FeedbackService(lifecycle=lifecycle)
    publisher = EventPublisher(redis=fake_redis)

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    app.dependency_overrides[get_feedback_service] = lambda: feedback_service
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_matching_service] = lambda: matching_service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def seed_match(db_session, add_match):
    """Insert and commit a match so request sessions can see it."""

    async def _seed(**overrides):
        match = await add_match(**overrides)
        await db_session.commit()
        return match

    return _seed


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


class TestReadMatches:

    async def test_get_match(self, client, seed_match):
        match = await seed_match()

        response = await client.get(f"{API}/matches/{match.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == str(match.id)
        assert body["status"] == "pending"
        assert body["overall_score"] == 72
        assert body["match_details"]["weights_used"] == {"hash": 0.571429, "color": 0.428571}

    async def test_get_unknown_match(self, client):
        response = await client.get(f"{API}/matches/{uuid.uuid4()}")
        assert response.status_code == 404

    async def test_list_for_case(self, client, seed_match):
        case_id = uuid.uuid4()
        await seed_match(source_case_id=case_id, overall_score=50)
        await seed_match(target_case_id=case_id, overall_score=90)
        await seed_match(source_case_id=case_id, overall_score=70, status="viewed")
        await seed_match(overall_score=99)

        response = await client.get(f"{API}/matches", params={"case_id": str(case_id)})
        assert response.status_code == 200
        assert [m["overall_score"] for m in response.json()] == [90, 70, 50]

        response = await client.get(
            f"{API}/matches", params={"case_id": str(case_id), "status": "viewed"}
        )
        assert [m["overall_score"] for m in response.json()] == [70]

        response = await client.get(
            f"{API}/matches", params={"case_id": str(case_id), "min_score": 60}
        )
        assert [m["overall_score"] for m in response.json()] == [90, 70]

    async def test_list_requires_case(self, client):
        response = await client.get(f"{API}/matches")
        assert response.status_code == 422


class TestLifecycleEndpoints:

    async def test_view(self, client, seed_match, fake_redis):
        match = await seed_match(status="notified")

        response = await client.post(f"{API}/matches/{match.id}/view", json={"side": "source"})

        assert response.status_code == 200
        assert response.json()["status"] == "viewed"
        assert fake_redis.event_types == ["match.updated"]

    async def test_view_resolved_match_conflicts(self, client, seed_match):
        match = await seed_match(status="rejected")

        response = await client.post(f"{API}/matches/{match.id}/view", json={"side": "target"})

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "invalid_transition"
        assert detail["current"] == "rejected"
        assert detail["requested"] == "viewed"

    async def test_acknowledge_notification(self, client, seed_match):
        match = await seed_match()

        response = await client.post(f"{API}/matches/{match.id}/notifications/target/ack")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "notified"
        assert body["target_user_notified"] is True

    async def test_acknowledge_unknown_side(self, client, seed_match):
        match = await seed_match()
        response = await client.post(f"{API}/matches/{match.id}/notifications/owner/ack")
        assert response.status_code == 422


class TestFeedbackEndpoint:

    async def test_both_sides_confirm(self, client, seed_match, fake_redis):
        match = await seed_match(status="viewed")
        url = f"{API}/matches/{match.id}/feedback"

        first = await client.post(url, json={"side": "target", "verdict": "confirmed"})
        second = await client.post(url, json={"side": "source", "verdict": "confirmed"})

        assert first.json()["status"] == "viewed"
        assert second.status_code == 200
        assert second.json()["status"] == "confirmed"
        assert "match.resolved" in fake_redis.event_types

    async def test_rejection_without_reason(self, client, seed_match):
        match = await seed_match(status="viewed")

        response = await client.post(
            f"{API}/matches/{match.id}/feedback",
            json={"side": "target", "verdict": "rejected"},
        )

        assert response.status_code == 422

    async def test_unknown_reason_code(self, client, seed_match):
        match = await seed_match(status="viewed")

        response = await client.post(
            f"{API}/matches/{match.id}/feedback",
            json={"side": "target", "verdict": "rejected", "reason_codes": ["ugly"]},
        )

        assert response.status_code == 422

    async def test_feedback_on_expired_match(self, client, seed_match):
        match = await seed_match(status="expired")

        response = await client.post(
            f"{API}/matches/{match.id}/feedback",
            json={"side": "source", "verdict": "confirmed"},
        )

        assert response.status_code == 409
        assert response.json()["detail"]["current"] == "expired"

    async def test_feedback_on_unknown_match(self, client):
        response = await client.post(
            f"{API}/matches/{uuid.uuid4()}/feedback",
            json={"side": "source", "verdict": "unsure"},
        )
        assert response.status_code == 404


class TestAdminEndpoints:

    async def test_stats_and_export(self, client, seed_match):
        match = await seed_match(status="viewed")
        await client.post(
            f"{API}/matches/{match.id}/feedback",
            json={"side": "target", "verdict": "rejected", "reason_codes": ["wrong_size"]},
        )

        stats = (await client.get(f"{API}/admin/feedback/stats")).json()
        assert stats["total"] == 1
        assert stats["by_reason"] == {"wrong_size": 1}

        response = await client.post(
            f"{API}/admin/feedback/export", json={"batch_id": "batch-test", "limit": 10}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["batch_id"] == "batch-test"
        assert body["count"] == 1
        assert body["records"][0]["rejection_reasons"] == ["wrong_size"]

        stats = (await client.get(f"{API}/admin/feedback/stats")).json()
        assert stats["by_training_status"] == {"exported": 1}

    async def test_expiry_sweep(self, client, seed_match, fake_redis):
        old = datetime.now(timezone.utc) - timedelta(days=40)
        await seed_match(created_at=old)
        await seed_match(created_at=old, status="confirmed")
        await seed_match()

        response = await client.post(f"{API}/admin/matches/expire")

        assert response.status_code == 200
        assert response.json()["expired"] == 1
        assert fake_redis.event_types == ["match.resolved"]


class TestEventEndpoints:

    async def test_photo_ready_is_accepted(self, client, matching_service):
        photo_id, case_id = uuid.uuid4(), uuid.uuid4()

        response = await client.post(
            f"{API}/events/photo-ready",
            json={"photo_id": str(photo_id), "case_id": str(case_id), "case_type": "lost"},
        )

        assert response.status_code == 202
        assert response.json() == {"status": "accepted", "photo_id": str(photo_id)}
        event = matching_service.process_photo_ready.await_args.args[0]
        assert event.photo_id == photo_id
        assert event.case_type == "lost"

    async def test_photo_ready_validates_payload(self, client):
        response = await client.post(f"{API}/events/photo-ready", json={"photo_id": "nope"})
        assert response.status_code == 422

    async def test_case_closed(self, client, matching_service):
        case_id = uuid.uuid4()

        response = await client.post(
            f"{API}/events/case-closed", json={"case_id": str(case_id), "reason": "deleted"}
        )

        assert response.status_code == 200
        assert response.json() == {"case_id": str(case_id), "expired": 3}
        matching_service.process_case_closed.assert_awaited_once()
        assert matching_service.process_case_closed.await_args.args[0].reason == "deleted"


async def test_request_id_is_echoed(client):
    generated = await client.get("/health")
    assert generated.headers["X-Request-ID"]

    supplied = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert supplied.headers["X-Request-ID"] == "req-123"
