"""Leaderboard runner tests: one pass reconciles awards then refreshes both windows."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from ascend.db.models import XPTransaction
from ascend.exceptions import RecordFailed
from ascend.gamification import challenge_service
from ascend.gamification.xp_service import award_xp
from ascend.workers import leaderboard_runner


@pytest.fixture
def runner_sessions(session_factory, monkeypatch):
    monkeypatch.setattr(leaderboard_runner, "get_session_factory", lambda: session_factory)
    return session_factory


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_refreshes_both_windows(self, runner_sessions, make_user, publisher):
        uid = await make_user()
        async with runner_sessions() as db:
            await award_xp(db, None, uid, 45, "pitch_created")

        summary = await leaderboard_runner.run_once(publisher)

        assert summary == {"reconciled": 0, "weekly": 1, "monthly": 1}
        channels = [c.args[0] for c in publisher.publish.await_args_list]
        assert channels.count("pubsub:leaderboard_refreshed") == 2

    @pytest.mark.asyncio
    async def test_reconciled_award_counts_towards_ranking(
        self, runner_sessions, make_user, make_challenge, monkeypatch,
    ):
        uid = await make_user()
        cid = await make_challenge({}, xp_reward=70)

        async def _fail(*_args, **_kwargs):
            raise RecordFailed("ledger unavailable")

        original = challenge_service.record_transaction
        async with runner_sessions() as db:
            attempt = await challenge_service.start_challenge(db, None, uid, cid)
            monkeypatch.setattr(challenge_service, "record_transaction", _fail)
            await challenge_service.update_progress(db, None, attempt.id, {})
        monkeypatch.setattr(challenge_service, "record_transaction", original)

        summary = await leaderboard_runner.run_once(None)

        assert summary["reconciled"] == 1
        assert summary["weekly"] == 1
        async with runner_sessions() as db:
            amounts = (await db.execute(
                select(XPTransaction.amount).where(XPTransaction.user_id == uid)
            )).scalars().all()
        assert amounts == [70]

    @pytest.mark.asyncio
    async def test_store_failure_during_reconcile_does_not_stop_refresh(
        self, session_factory, make_user, monkeypatch, caplog,
    ):
        uid = await make_user()
        async with session_factory() as db:
            await award_xp(db, None, uid, 45, "pitch_created")

        opened = []

        def _factory():
            session = session_factory()
            if not opened:
                session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("server closed")))
            opened.append(session)
            return session

        monkeypatch.setattr(leaderboard_runner, "get_session_factory", lambda: _factory)
        with caplog.at_level(logging.ERROR, logger="ascend.workers.leaderboard_runner"):
            summary = await leaderboard_runner.run_once(None)

        assert summary == {"weekly": 1, "monthly": 1}
        assert any("Award reconciliation failed" in r.getMessage() for r in caplog.records)
