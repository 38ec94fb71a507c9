"""Tests for the timer-driven sweep (sync retry + retention purge)."""
from datetime import timedelta
from unittest.mock import patch

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.blocking import BlockingScheduler

from secure_entry.database import FULL_CAPABILITIES
from secure_entry.models.base import utcnow
from secure_entry.modules.retention import PurgeReport
from secure_entry.modules.scheduler import build_scheduler, run_sweep, summarize
from secure_entry.modules.sync_engine import SyncSweepReport


def _sweep(test_settings, session_factory, archive, objects):
    return run_sweep(
        settings=test_settings,
        session_factory=session_factory,
        capabilities=FULL_CAPABILITIES,
        client=archive,
        objects=objects,
    )


def test_sweep_runs_both_phases(make_entry, session_factory, archive, objects, test_settings, days_ago):
    make_entry(doc_no="A1", sync_status="FAILED", created_at=utcnow() - timedelta(hours=1))
    make_entry(doc_no="A2", created_at=days_ago(400))

    results = _sweep(test_settings, session_factory, archive, objects)

    assert results["sync"].done == 2
    assert results["purge"].rows_deleted == 1


def test_sync_failure_does_not_block_purge(make_entry, session_factory, archive, objects, test_settings, days_ago):
    make_entry(doc_no="A1", created_at=days_ago(400))
    with patch("secure_entry.modules.scheduler.run_sync_sweep", side_effect=RuntimeError("db locked")):
        results = _sweep(test_settings, session_factory, archive, objects)
    assert results["sync"] is None
    assert results["purge"].rows_deleted == 1


def test_purge_failure_is_contained(session_factory, archive, objects, test_settings):
    with patch("secure_entry.modules.scheduler.purge_expired", side_effect=RuntimeError("boom")):
        results = _sweep(test_settings, session_factory, archive, objects)
    assert results["purge"] is None
    assert results["sync"] is not None


def test_build_scheduler_registers_sweep_job(session_factory, test_settings):
    cfg = test_settings.model_copy(update={"SWEEP_INTERVAL_MINUTES": 7})
    scheduler = build_scheduler(settings=cfg, session_factory=session_factory, capabilities=FULL_CAPABILITIES)
    assert isinstance(scheduler, BackgroundScheduler)
    jobs = scheduler.get_jobs()
    assert [job.id for job in jobs] == ["sweep"]
    assert jobs[0].trigger.interval == timedelta(minutes=7)
    assert jobs[0].max_instances == 1


def test_blocking_scheduler(session_factory, test_settings):
    scheduler = build_scheduler(
        settings=test_settings, session_factory=session_factory,
        capabilities=FULL_CAPABILITIES, blocking=True,
    )
    assert isinstance(scheduler, BlockingScheduler)


def test_summarize():
    text = summarize({
        "sync": SyncSweepReport(attempted=3, done=2, failed=1, stuck=["x"]),
        "purge": PurgeReport(examined=4, rows_deleted=3, deferred=1),
    })
    assert text == "sync 2/3 done, 1 stuck; purge 3/4 deleted, 1 deferred"
    assert summarize({"sync": None, "purge": None}) == "nothing ran"
