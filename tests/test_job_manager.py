"""
Tests for the job runner: status lifecycle, recovery boundary and unit locks.
"""

import threading
import time

import pytest

from dpg_jobs.errors import SequenceGap
from dpg_jobs.job_manager import JobManager
from dpg_jobs.models import EventLevel, JobStatus


@pytest.fixture
def manager(store):
    manager = JobManager(store, max_workers=2)
    yield manager
    manager.shutdown()


def run(manager, body, *args, unit_id=None):
    summary = manager.start("TestJob", "Unit", unit_id or 1, body, *args, unit_id=unit_id)
    return manager.wait(summary.id, timeout=10)


class TestJobLifecycle:
    def test_create_returns_running_job(self, manager):
        job = manager.create_job("AddMasterFiles", "Unit", 5)
        detail = manager.get_job(job.id)
        assert detail.status == JobStatus.RUNNING
        assert detail.originator_type == "Unit"
        assert detail.originator_id == 5
        assert detail.ended_at is None

    def test_success_finishes_job(self, manager):
        def body(job):
            job.info("step one")
            job.info("step two")

        detail = run(manager, body)

        assert detail.status == JobStatus.DONE
        assert detail.ended_at is not None
        assert [event.message for event in detail.events] == ["step one", "step two", "job finished"]

    def test_errors_count_failures_without_ending_job(self, manager):
        def body(job):
            job.error("item one failed")
            job.warning("checksum mismatch")
            job.error("item two failed")

        detail = run(manager, body)

        assert detail.status == JobStatus.DONE
        assert detail.failures == 2
        assert [event.level for event in detail.events[:3]] == [EventLevel.ERROR, EventLevel.WARNING, EventLevel.ERROR]

    def test_list_jobs_newest_first(self, manager):
        first = run(manager, lambda job: None)
        second = run(manager, lambda job: None)
        assert [job.id for job in manager.list_jobs()][:2] == [second.id, first.id]

    def test_unknown_job(self, manager):
        assert manager.get_job(999999) is None


class TestRecoveryBoundary:
    """Every job ends terminal, whatever its body does."""

    def test_mutation_error_becomes_fatal(self, manager):
        def body(job):
            raise SequenceGap("Gap in sequence number of new master files; 6 to 8")

        detail = run(manager, body)

        assert detail.status == JobStatus.FAILED
        assert detail.error == "Gap in sequence number of new master files; 6 to 8"
        assert detail.events[-1].level == EventLevel.FATAL

    def test_unexpected_exception_is_caught(self, manager):
        def body(job):
            raise RuntimeError("disk on fire")

        detail = run(manager, body)

        assert detail.status == JobStatus.FAILED
        assert detail.error.startswith("Unexpected failure: disk on fire")
        assert "Traceback" in detail.error

    def test_worker_survives_a_crash(self, manager):
        run(manager, lambda job: 1 / 0)
        assert run(manager, lambda job: None).status == JobStatus.DONE

    def test_terminal_status_is_immutable(self, manager):
        job = manager.create_job("TestJob", "Unit", 1)
        job.done()
        job.fatal("too late")

        detail = manager.get_job(job.id)
        assert detail.status == JobStatus.DONE
        assert detail.error is None

    def test_body_arguments_are_passed(self, manager):
        seen = []
        run(manager, lambda job, a, b: seen.append((a, b)), "x", 2)
        assert seen == [("x", 2)]


class TestUnitLocks:
    def test_same_unit_jobs_are_serialized(self, manager):
        order = []
        release = threading.Event()

        def first(job):
            order.append("first")
            release.wait(5)
            order.append("first done")

        def second(job):
            order.append("second")

        a = manager.start("First", "Unit", 7, first, unit_id=7)
        for _ in range(200):
            if order:
                break
            time.sleep(0.01)
        b = manager.start("Second", "Unit", 7, second, unit_id=7)
        time.sleep(0.2)
        assert order == ["first"]

        release.set()
        manager.wait(a.id, timeout=10)
        detail = manager.wait(b.id, timeout=10)

        assert order == ["first", "first done", "second"]
        assert detail.events[0].message == "Waiting for another job on unit 7 to finish"

    def test_different_units_run_concurrently(self, manager):
        release = threading.Event()
        started = threading.Event()

        def blocker(job):
            started.set()
            release.wait(5)

        a = manager.start("Blocker", "Unit", 1, blocker, unit_id=1)
        assert started.wait(5)
        other = manager.wait(manager.start("Other", "Unit", 2, lambda job: None, unit_id=2).id, timeout=5)
        assert other.status == JobStatus.DONE
        release.set()
        manager.wait(a.id, timeout=10)

    def test_multi_unit_job_waits_for_every_unit(self, manager):
        release = threading.Event()
        started = threading.Event()

        def holder(job):
            started.set()
            release.wait(5)

        a = manager.start("Deaccession", "MasterFile", 1, holder, unit_id=3)
        assert started.wait(5)
        b = manager.start("Clone", "Unit", 4, lambda job: None, unit_id=4, lock_units=[3])
        time.sleep(0.2)
        assert manager.get_job(b.id).status == JobStatus.RUNNING

        release.set()
        manager.wait(a.id, timeout=10)
        detail = manager.wait(b.id, timeout=10)

        assert detail.status == JobStatus.DONE
        assert detail.events[0].message == "Waiting for another job on unit 3 to finish"

    def test_locks_are_dropped_when_idle(self, manager):
        for unit_id in range(1, 6):
            run(manager, lambda job: None, unit_id=unit_id)
        run(manager, lambda job: None, unit_id=9)
        manager.wait(manager.start("Both", "Unit", 1, lambda job: None, unit_id=1, lock_units=[2, 1]).id, timeout=10)
        assert len(manager.unit_locks) == 0
