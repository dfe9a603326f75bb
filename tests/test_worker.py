import threading
import time

import pytest

from errors import OperationCancelled, OperationInProgress
from worker import BackgroundJob, ProgressGate


def test_progress_gate_is_monotonic_and_clamped() -> None:
    seen = []
    gate = ProgressGate(lambda pct, label: seen.append((pct, label)), threading.Event())
    gate.report(10, "a")
    gate.report(5, "b")
    gate.report(150, "c")
    gate.report(-3, "d")
    assert seen == [(10, "a"), (10, "b"), (100, "c"), (100, "d")]
    assert gate.last == 100


def test_progress_gate_mutes_after_cancel() -> None:
    seen = []
    cancel = threading.Event()
    gate = ProgressGate(seen.append, cancel)
    assert gate.report(1)
    cancel.set()
    assert not gate.report(50)
    assert seen == [1]
    assert not ProgressGate(None, threading.Event()).report(10)


def test_job_runs_and_claims_once() -> None:
    job = BackgroundJob("test-job")
    claims = []
    done = threading.Event()

    def target(cancel: threading.Event, job_id: int) -> None:
        claims.append(job.claim(job_id))
        claims.append(job.claim(job_id))
        done.set()

    job_id = job.start(target)
    assert done.wait(5)
    assert claims == [True, False]
    assert job.stop(5)
    assert not job.is_running()
    assert not job.is_current(job_id)


def test_second_start_is_refused_while_running() -> None:
    job = BackgroundJob("test-job")
    release = threading.Event()
    job.start(lambda cancel, job_id: release.wait(5))
    with pytest.raises(OperationInProgress):
        job.start(lambda cancel, job_id: None)
    release.set()
    assert job.stop(5)


def test_cooperative_stop_within_timeout() -> None:
    job = BackgroundJob("test-job")
    started = threading.Event()

    def target(cancel: threading.Event, job_id: int) -> None:
        started.set()
        cancel.wait(5)
        raise OperationCancelled("stopped")

    job.start(target)
    assert started.wait(5)
    assert job.stop(5) is True
    assert not job.is_running()


def test_stop_detaches_unresponsive_worker() -> None:
    job = BackgroundJob("test-job")
    release = threading.Event()
    started = threading.Event()
    claims = []

    def target(cancel: threading.Event, job_id: int) -> None:
        started.set()
        release.wait(5)
        claims.append(job.claim(job_id))

    old_id = job.start(target)
    assert started.wait(5)
    assert job.stop(timeout=0.01) is False
    assert not job.is_running()
    assert not job.is_current(old_id)
    new_done = threading.Event()
    job.start(lambda cancel, job_id: new_done.set())
    assert new_done.wait(5)
    release.set()
    assert job.stop(5)
    time.sleep(0.2)
    assert claims == [False]
