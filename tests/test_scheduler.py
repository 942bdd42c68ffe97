from __future__ import annotations

import threading

import pytest

from app.infra.scheduler import JobScheduler


def test_start_is_idempotent_per_key() -> None:
    scheduler = JobScheduler()
    ran = threading.Event()
    try:
        assert scheduler.start("org:amexing", 0.01, ran.set) is True
        assert scheduler.start("org:amexing", 0.01, ran.set) is False
        assert ran.wait(2.0)
        assert scheduler.is_running("org:amexing") is True
        assert scheduler.keys() == ["org:amexing"]
    finally:
        scheduler.stop_all()


def test_stop_is_idempotent() -> None:
    scheduler = JobScheduler()
    scheduler.start("org:client-1", 0.05, lambda: None)

    assert scheduler.stop("org:client-1") is True
    assert scheduler.stop("org:client-1") is False
    assert scheduler.is_running("org:client-1") is False
    assert scheduler.keys() == []


def test_failing_run_does_not_end_the_loop() -> None:
    scheduler = JobScheduler()
    calls: list[int] = []
    second_call = threading.Event()

    def _flaky() -> None:
        calls.append(1)
        if len(calls) >= 2:
            second_call.set()
        raise RuntimeError("boom")

    try:
        scheduler.start("org:flaky", 0.01, _flaky)
        assert second_call.wait(2.0)
    finally:
        scheduler.stop_all()


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        JobScheduler().start("org:bad", 0, lambda: None)
