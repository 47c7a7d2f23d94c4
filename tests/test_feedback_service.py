"""Tests for FeedbackService: verdict resolution and recalibration exports."""
import uuid

import pytest
from sqlalchemy import select

from foundmatch.models.feedback import MatchFeedback
from foundmatch.services.event_publisher import pending_events
from foundmatch.services.feedback_service import FeedbackService, resolve_outcome
from foundmatch.services.lifecycle_service import InvalidTransitionError, MatchLifecycle


@pytest.fixture
def feedback():
    lifecycle = MatchLifecycle(alert_sides=["target"], retention_days=30)
    return FeedbackService(lifecycle=lifecycle)


@pytest.mark.parametrize(
    "source, target, expected",
    [
        (None, None, None),
        ("confirmed", None, None),
        (None, "confirmed", None),
        ("confirmed", "confirmed", "confirmed"),
        ("confirmed", "rejected", "rejected"),
        ("rejected", "confirmed", "rejected"),
        ("unsure", "rejected", "rejected"),
        ("unsure", "confirmed", None),
    ],
)
def test_resolve_outcome(source, target, expected):
    assert resolve_outcome(source, target) == expected


class TestValidate:

    def test_rejection_requires_reason(self):
        with pytest.raises(ValueError, match="reason code"):
            FeedbackService.validate("source", "rejected", [])

    @pytest.mark.parametrize(
        "side, verdict, reasons",
        [
            ("owner", "confirmed", []),
            ("source", "maybe", []),
            ("source", "rejected", ["too_blurry"]),
        ],
    )
    def test_malformed_submissions(self, side, verdict, reasons):
        with pytest.raises(ValueError):
            FeedbackService.validate(side, verdict, reasons)

    def test_reason_codes_are_deduplicated(self):
        codes = FeedbackService.validate(
            "target", "rejected", ["wrong_color", "wrong_size", "wrong_color"]
        )
        assert codes == ["wrong_color", "wrong_size"]


class TestResolution:

    async def test_both_confirmations_confirm(self, db_session, feedback, add_match):
        match = await add_match(status="notified")

        match = await feedback.submit_feedback(match.id, "target", "confirmed", db_session)
        assert match.status == "viewed"
        assert match.target_user_feedback == "confirmed"

        match = await feedback.submit_feedback(match.id, "source", "confirmed", db_session)
        assert match.status == "confirmed"
        assert match.resolved_at is not None
        assert "match.resolved" in [e["type"] for e in pending_events(db_session)]

    async def test_single_confirmation_stays_open_until_the_other_side_rejects(
        self, db_session, feedback, add_match
    ):
        match = await add_match(status="viewed")

        match = await feedback.submit_feedback(match.id, "source", "confirmed", db_session)
        assert match.status == "viewed"
        assert match.resolved_at is None

        match = await feedback.submit_feedback(
            match.id, "target", "rejected", db_session, reason_codes=["wrong_brand"]
        )

        assert match.status == "rejected"
        assert match.source_user_feedback == "confirmed"
        assert match.target_rejection_reasons == ["wrong_brand"]

    async def test_rejection_wins_when_it_arrives_first(self, db_session, feedback, add_match):
        match = await add_match(status="viewed")

        await feedback.submit_feedback(
            match.id, "source", "rejected", db_session, reason_codes=["wrong_color"]
        )
        match = await feedback.submit_feedback(match.id, "target", "confirmed", db_session)

        assert match.status == "rejected"
        assert match.source_rejection_reasons == ["wrong_color"]
        assert match.target_user_feedback == "confirmed"

    async def test_rejection_wins_when_it_arrives_second(self, db_session, feedback, add_match):
        match = await add_match(status="viewed")

        await feedback.submit_feedback(match.id, "source", "confirmed", db_session)
        match = await feedback.submit_feedback(
            match.id,
            "target",
            "rejected",
            db_session,
            reason_codes=["different_item_type"],
            detail="Mine has a cracked screen",
        )

        assert match.status == "rejected"
        assert match.target_rejection_details == "Mine has a cracked screen"

    async def test_unsure_keeps_match_open(self, db_session, feedback, add_match):
        match = await add_match()

        match = await feedback.submit_feedback(match.id, "target", "unsure", db_session)

        assert match.status == "viewed"
        assert match.resolved_at is None

    async def test_feedback_on_expired_match(self, db_session, feedback, add_match):
        match = await add_match(status="expired")
        with pytest.raises(InvalidTransitionError):
            await feedback.submit_feedback(match.id, "target", "confirmed", db_session)

    async def test_cannot_reopen_a_confirmed_match(self, db_session, feedback, add_match):
        match = await add_match(
            status="confirmed",
            source_user_feedback="confirmed",
            target_user_feedback="confirmed",
        )

        with pytest.raises(InvalidTransitionError) as exc_info:
            await feedback.submit_feedback(match.id, "source", "unsure", db_session)

        assert exc_info.value.current == "confirmed"

    async def test_unknown_match(self, db_session, feedback):
        with pytest.raises(LookupError):
            await feedback.submit_feedback(uuid.uuid4(), "target", "confirmed", db_session)


class TestFeedbackRecords:

    async def test_record_snapshots_scores_and_weights(self, db_session, feedback, add_match):
        match = await add_match(status="viewed")

        await feedback.submit_feedback(
            match.id,
            "target",
            "rejected",
            db_session,
            reason_codes=["wrong_brand"],
            user_id="user-42",
        )

        record = (await db_session.execute(select(MatchFeedback))).scalar_one()
        assert record.photo_match_id == match.id
        assert record.side == "target"
        assert record.is_source_user is False
        assert record.user_id == "user-42"
        assert record.match_scores_snapshot["overall"] == 72
        assert record.match_scores_snapshot["hash"] == 80
        assert record.weights_used_snapshot == {"hash": 0.571429, "color": 0.428571}
        assert record.training_status == "pending"

    async def test_stats(self, db_session, feedback, add_match):
        first = await add_match(status="viewed")
        second = await add_match(status="viewed", overall_score=40, hash_score=40)
        await feedback.submit_feedback(first.id, "target", "confirmed", db_session)
        await feedback.submit_feedback(
            second.id, "target", "rejected", db_session, reason_codes=["wrong_color"]
        )
        await feedback.submit_feedback(
            second.id, "source", "rejected", db_session, reason_codes=["wrong_color", "other"]
        )

        stats = await feedback.get_feedback_stats(db_session)

        assert stats["total"] == 3
        assert stats["by_verdict"] == {"confirmed": 1, "rejected": 2}
        assert stats["by_reason"] == {"wrong_color": 2, "other": 1}
        assert stats["by_training_status"] == {"pending": 3}
        assert stats["mean_scores"]["confirmed"]["overall"] == 72.0
        assert stats["mean_scores"]["rejected"]["hash"] == 40.0
        assert stats["mean_scores"]["rejected"]["dna"] is None
        assert stats["mean_scores"]["unsure"]["overall"] is None

    async def test_export_and_mark_batch(self, db_session, feedback, add_match):
        for _ in range(3):
            match = await add_match(status="viewed")
            await feedback.submit_feedback(match.id, "target", "unsure", db_session)

        batch_id, records = await feedback.export_training_batch(db_session, limit=2)

        assert len(records) == 2
        assert batch_id.startswith("batch-")
        assert {r["feedback_type"] for r in records} == {"unsure"}

        _, rest = await feedback.export_training_batch(db_session, batch_id="batch-two")
        assert len(rest) == 1

        assert await feedback.mark_batch(batch_id, "trained", db_session) == 2
        stats = await feedback.get_feedback_stats(db_session)
        assert stats["by_training_status"] == {"trained": 2, "exported": 1}

    async def test_mark_batch_rejects_unknown_status(self, db_session, feedback):
        with pytest.raises(ValueError):
            await feedback.mark_batch("batch-x", "exported", db_session)
