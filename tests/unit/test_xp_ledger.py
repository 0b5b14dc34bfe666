"""XP ledger tests: recording, idempotency, level advance, recent history."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from ascend import events
from ascend.db.models import UserProgress, XPTransaction
from ascend.exceptions import NotFound, ReadFailed, RecordFailed
from ascend.gamification.activity import describe
from ascend.gamification.constants import TransactionType
from ascend.gamification.xp_service import (
    award_xp,
    get_user_progress,
    get_xp_history,
    list_recent,
    record_transaction,
)


def _published(publisher) -> list[str]:
    return [c.args[0].removeprefix("pubsub:") for c in publisher.publish.await_args_list]


async def _ledger_count(db, user_id: int) -> int:
    result = await db.execute(select(func.count()).select_from(XPTransaction).where(XPTransaction.user_id == user_id))
    return result.scalar_one()


class TestRecordTransaction:
    """Appending ledger rows and crediting the progress summary."""

    @pytest.mark.asyncio
    async def test_records_row_and_credits_progress(self, db_session, make_user, publisher):
        uid = await make_user()

        recorded = await record_transaction(
            db_session, publisher, uid, 40, "pitch_created",
            reference_id="pitch-9", reference_type="pitch", metadata={"title": "Solar kiosks"},
        )
        await db_session.commit()
        await events.publish_deferred(db_session)

        assert recorded is True
        rows = (await db_session.execute(select(XPTransaction).where(XPTransaction.user_id == uid))).scalars().all()
        assert len(rows) == 1
        row = rows[0]
        assert row.amount == 40
        assert row.transaction_type == "pitch_created"
        assert row.reference_id == "pitch-9"
        assert row.transaction_metadata == {"title": "Solar kiosks"}
        assert row.id is not None
        assert row.created_at is not None

        progress = await db_session.get(UserProgress, uid)
        assert progress.xp == 40
        assert progress.total_xp_earned == 40
        assert progress.level == 1
        assert _published(publisher) == ["xp_awarded"]

    @pytest.mark.asyncio
    async def test_crossing_threshold_raises_level_and_publishes(self, db_session, make_user, publisher):
        uid = await make_user()

        await record_transaction(db_session, publisher, uid, 90, "post_like")
        await record_transaction(db_session, publisher, uid, 120, "mentor_session")
        await db_session.commit()
        await events.publish_deferred(db_session)

        progress = await db_session.get(UserProgress, uid)
        assert progress.xp == 210
        assert progress.level == 3
        assert _published(publisher) == ["xp_awarded", "xp_awarded", "level_up"]
        level_up = publisher.publish.await_args_list[-1].args[1]
        assert '"old_level": 1' in level_up
        assert '"new_level": 3' in level_up

    @pytest.mark.asyncio
    async def test_stored_level_never_lowered(self, db_session, make_user):
        uid = await make_user()
        db_session.add(UserProgress(
            user_id=uid, level=5, xp=0, total_challenges_started=0, challenges_completed=0,
            badges_earned=0, total_xp_earned=0, profile_completion_percentage=0,
            updated_at=datetime.now(timezone.utc),
        ))
        await db_session.commit()

        await record_transaction(db_session, None, uid, 10, "post_like")
        await db_session.commit()

        progress = await db_session.get(UserProgress, uid)
        assert progress.level == 5
        assert progress.xp == 10

    @pytest.mark.asyncio
    async def test_enum_member_stored_as_its_value(self, db_session, make_user):
        uid = await make_user()

        await record_transaction(db_session, None, uid, 10, TransactionType.PITCH_CREATED)
        await db_session.commit()

        row = (await db_session.execute(select(XPTransaction).where(XPTransaction.user_id == uid))).scalar_one()
        assert row.transaction_type == "pitch_created"
        assert describe(row).label == "Created a new pitch"

    @pytest.mark.asyncio
    async def test_events_held_until_caller_commits(self, db_session, make_user, publisher):
        uid = await make_user()

        await record_transaction(db_session, publisher, uid, 120, "mentor_session")
        assert publisher.publish.await_count == 0

        await db_session.commit()
        assert await events.publish_deferred(db_session) == 2
        assert _published(publisher) == ["xp_awarded", "level_up"]

    @pytest.mark.asyncio
    async def test_rolled_back_award_publishes_nothing(self, db_session, make_user, publisher):
        uid = await make_user()

        await record_transaction(db_session, publisher, uid, 120, "mentor_session")
        await db_session.rollback()
        events.discard_deferred(db_session)

        assert await events.publish_deferred(db_session) == 0
        assert publisher.publish.await_count == 0
        assert await _ledger_count(db_session, uid) == 0

    @pytest.mark.asyncio
    async def test_failed_commit_in_award_xp_publishes_nothing(self, db_session, make_user, publisher, monkeypatch):
        uid = await make_user()
        monkeypatch.setattr(db_session, "commit", AsyncMock(side_effect=OperationalError("COMMIT", {}, Exception("locked"))))

        with pytest.raises(RecordFailed):
            await award_xp(db_session, publisher, uid, 15, "post_like")
        assert publisher.publish.await_count == 0
        assert events.pending_mark(db_session) == 0

    @pytest.mark.asyncio
    async def test_unknown_type_accepted(self, db_session, make_user):
        uid = await make_user()
        assert await record_transaction(db_session, None, uid, 5, "daily_bonus") is True
        await db_session.commit()
        assert await _ledger_count(db_session, uid) == 1

    @pytest.mark.asyncio
    async def test_idempotency_key_reused_is_noop(self, db_session, make_user, publisher):
        uid = await make_user()

        first = await record_transaction(db_session, publisher, uid, 25, "verification", idempotency_key="verify:1")
        second = await record_transaction(db_session, publisher, uid, 25, "verification", idempotency_key="verify:1")
        await db_session.commit()
        await events.publish_deferred(db_session)

        assert (first, second) == (True, False)
        assert await _ledger_count(db_session, uid) == 1
        progress = await db_session.get(UserProgress, uid)
        assert progress.xp == 25
        assert _published(publisher) == ["xp_awarded"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 2.5, True])
    async def test_rejects_non_positive_or_non_integer(self, db_session, make_user, amount):
        uid = await make_user()
        with pytest.raises(ValueError):
            await record_transaction(db_session, None, uid, amount, "post_like")
        assert await _ledger_count(db_session, uid) == 0

    @pytest.mark.asyncio
    async def test_unknown_user(self, db_session):
        with pytest.raises(NotFound):
            await record_transaction(db_session, None, 999, 10, "post_like")

    @pytest.mark.asyncio
    async def test_store_failure_becomes_record_failed(self, db_session, make_user, monkeypatch):
        uid = await make_user()
        monkeypatch.setattr(db_session, "flush", AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk I/O error"))))

        with pytest.raises(RecordFailed) as excinfo:
            await record_transaction(db_session, None, uid, 10, "post_like")
        assert excinfo.value.is_retryable is True
        assert "disk I/O error" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_redis_failure_does_not_fail_award(self, db_session, make_user):
        uid = await make_user()
        broken = AsyncMock()
        broken.publish.side_effect = ConnectionError("redis down")

        assert await award_xp(db_session, broken, uid, 15, "post_like") is True
        assert await _ledger_count(db_session, uid) == 1


class TestListRecent:
    """Newest-first history."""

    @pytest.mark.asyncio
    async def test_new_transaction_listed_once_first(self, db_session, make_user):
        uid = await make_user()
        other = await make_user()

        await award_xp(db_session, None, uid, 10, "post_like")
        await award_xp(db_session, None, other, 99, "post_like")
        await award_xp(db_session, None, uid, 30, "pitch_feedback", reference_id="p-1")

        recent = await list_recent(db_session, uid, limit=10)
        assert [t.amount for t in recent] == [30, 10]
        assert recent[0].transaction_type == "pitch_feedback"
        assert sum(1 for t in recent if t.reference_id == "p-1") == 1

    @pytest.mark.asyncio
    async def test_limit(self, db_session, make_user):
        uid = await make_user()
        for amount in (1, 2, 3, 4):
            await award_xp(db_session, None, uid, amount, "post_like")
        recent = await list_recent(db_session, uid, limit=2)
        assert [t.amount for t in recent] == [4, 3]

    @pytest.mark.asyncio
    async def test_empty(self, db_session, make_user):
        uid = await make_user()
        assert await list_recent(db_session, uid) == []

    @pytest.mark.asyncio
    async def test_store_failure_becomes_read_failed(self, db_session, monkeypatch):
        monkeypatch.setattr(db_session, "execute", AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("gone"))))
        with pytest.raises(ReadFailed):
            await list_recent(db_session, 1)


class TestHistoryAndProgress:
    """Paginated history and the joined progress view."""

    @pytest.mark.asyncio
    async def test_history_pages(self, db_session, make_user):
        uid = await make_user()
        for amount in range(1, 6):
            await award_xp(db_session, None, uid, amount, "post_like")

        page1, total = await get_xp_history(db_session, uid, page=1, per_page=2)
        page3, _ = await get_xp_history(db_session, uid, page=3, per_page=2)
        assert total == 5
        assert [t.amount for t in page1] == [5, 4]
        assert [t.amount for t in page3] == [1]

    @pytest.mark.asyncio
    async def test_progress_none_before_first_award(self, db_session, make_user):
        uid = await make_user()
        assert await get_user_progress(db_session, uid) is None

    @pytest.mark.asyncio
    async def test_progress_view(self, db_session, make_user):
        uid = await make_user(username="amara", full_name="Amara Okafor")
        await award_xp(db_session, None, uid, 130, "mentor_session")

        view = await get_user_progress(db_session, uid)
        assert view.username == "amara"
        assert view.full_name == "Amara Okafor"
        assert view.xp == 130
        assert view.level == 2
