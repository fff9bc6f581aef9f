"""Tests for the worker process pool."""

import multiprocessing
import os
import sys
import time
from unittest.mock import MagicMock

import pytest

from storyshot.master.pool import WorkerPool, WorkerRecord
from storyshot.models.config import BrowserConfig, RunnerConfig
from storyshot.models.messages import ReadyMessage, ReportMessage, encode_message

fork_only = pytest.mark.skipif(sys.platform == "win32", reason="needs the fork start method")


def report_and_exit(config_data, browser, conn, verbose):
    conn.send(encode_message(ReadyMessage(browser=browser, pid=os.getpid())))
    conn.send(encode_message(ReportMessage(test_id="t1", outcome="fail", error="last words")))
    conn.close()
    os._exit(3)


def wait_for_shutdown(config_data, browser, conn, verbose):
    conn.recv()
    conn.close()


def _collect(pool: WorkerPool, until, timeout: float = 10.0):
    events = []
    deadline = time.monotonic() + timeout
    while not until(events) and time.monotonic() < deadline:
        events.extend(pool.wait(0.1))
    return events


@pytest.fixture
def pool_config() -> RunnerConfig:
    return RunnerConfig(browsers={"chrome": BrowserConfig(limit=2)}, max_worker_restarts=1)


@fork_only
class TestWorkerPool:
    def _make_pool(self, config, target):
        return WorkerPool(config, target=target, mp_context=multiprocessing.get_context("fork"))

    def test_messages_before_exit(self, pool_config):
        pool = self._make_pool(pool_config, report_and_exit)
        record = pool.spawn("chrome")

        events = _collect(pool, lambda evs: any(e.kind == "exit" for e in evs))
        pool.shutdown()

        kinds = [(e.kind, type(e.message).__name__ if e.message else None) for e in events]
        assert kinds == [
            ("message", "ReadyMessage"),
            ("message", "ReportMessage"),
            ("exit", None),
        ]
        assert events[-1].record is record
        assert events[-1].exit_code == 3

    def test_start_spawns_limit_per_browser(self, pool_config):
        pool = self._make_pool(pool_config, wait_for_shutdown)
        pool.start()
        try:
            assert len(pool.workers_for("chrome")) == 2
        finally:
            pool.shutdown(timeout=5.0)
        assert pool.workers == []

    def test_shutdown_terminates_stragglers(self, pool_config):
        pool = self._make_pool(pool_config, wait_for_shutdown)
        record = pool.spawn("chrome")

        pool.shutdown(timeout=5.0)

        assert not record.process.is_alive()

    def test_respawn_budget(self, pool_config):
        pool = self._make_pool(pool_config, wait_for_shutdown)
        first = pool.spawn("chrome")
        try:
            second = pool.respawn(first)
            assert second is not None
            assert second.crash_count == 1
            assert pool.respawn(second) is None
        finally:
            pool.shutdown(timeout=5.0)


class TestWorkerRecord:
    def test_idle_needs_ready_and_no_test(self):
        record = WorkerRecord(browser="chrome", process=MagicMock(pid=7), conn=MagicMock())
        assert not record.is_idle
        record.ready = True
        assert record.is_idle
        record.test_id = "t1"
        assert not record.is_idle
        record.test_id = None
        record.conn_closed = True
        assert not record.is_idle
        assert record.pid == 7
