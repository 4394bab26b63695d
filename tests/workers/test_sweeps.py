"""Tests for the periodic sweep jobs."""

from __future__ import annotations

from questline.signups.service import request_signup
from questline.workers.sweeps import (
    WorkerSettings,
    auto_archive_instances,
    mark_no_shows_sweep,
    reconcile_ledgers,
)


class TestSweeps:
    """Each sweep opens its own session and commits its own work."""

    async def test_idle_sweeps_do_nothing(self, database):
        assert await auto_archive_instances({}) == 0
        assert await mark_no_shows_sweep({}) == 0
        assert await reconcile_ledgers({}) == {"instances": 0, "users": 0}

    async def test_reconcile_freezes_drifted_instance(self, db_session, make_instance):
        instance = await make_instance()
        await request_signup(db_session, instance.id, 1)
        instance.current_signup_count = 3
        await db_session.commit()

        assert await reconcile_ledgers({}) == {"instances": 1, "users": 0}

        await db_session.refresh(instance)
        assert instance.ledger_frozen is True
        assert instance.current_signup_count == 3


class TestWorkerSettings:
    def test_registered_jobs(self):
        names = {f.__name__ for f in WorkerSettings.functions}
        assert names == {"auto_archive_instances", "mark_no_shows_sweep", "reconcile_ledgers"}
        assert len(WorkerSettings.cron_jobs) == 3
