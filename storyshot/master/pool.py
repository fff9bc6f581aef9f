"""Worker process pool owned by the master."""

from __future__ import annotations

import logging
import multiprocessing
import time
from dataclasses import dataclass
from multiprocessing.connection import wait as wait_for_objects
from typing import Callable, Iterable, Optional

from storyshot.models.config import RunnerConfig
from storyshot.models.messages import ShutdownMessage, decode_message, encode_message
from storyshot.worker.worker import worker_main

logger = logging.getLogger(__name__)


@dataclass
class WorkerRecord:
    browser: str
    process: object  # multiprocessing process
    conn: object  # parent end of the pipe
    test_id: Optional[str] = None
    crash_count: int = 0
    ready: bool = False
    fatal_error: Optional[str] = None
    conn_closed: bool = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def is_idle(self) -> bool:
        return self.ready and self.test_id is None and not self.conn_closed


@dataclass
class PoolEvent:
    record: WorkerRecord
    kind: str  # "message" or "exit"
    message: object = None
    exit_code: Optional[int] = None


class WorkerPool:
    """Spawns one process per worker slot and multiplexes their pipes."""

    def __init__(
        self,
        config: RunnerConfig,
        verbose: bool = False,
        target: Callable = worker_main,
        mp_context=None,
    ):
        self.config = config
        self.verbose = verbose
        self._target = target
        self._ctx = mp_context or multiprocessing.get_context("spawn")
        self.workers: list[WorkerRecord] = []
        self.restarts: dict[str, int] = {}

    def start(self, browsers: Optional[Iterable[str]] = None) -> None:
        names = list(browsers) if browsers is not None else list(self.config.browsers)
        for name in names:
            for _ in range(self.config.browsers[name].limit):
                self.spawn(name)

    def spawn(self, browser: str, crash_count: int = 0) -> WorkerRecord:
        parent_conn, child_conn = self._ctx.Pipe()
        process = self._ctx.Process(
            target=self._target,
            args=(self.config.model_dump(mode="json"), browser, child_conn, self.verbose),
            name=f"storyshot-{browser}",
            daemon=True,
        )
        process.start()
        child_conn.close()
        record = WorkerRecord(browser=browser, process=process, conn=parent_conn, crash_count=crash_count)
        self.workers.append(record)
        logger.debug("Spawned %s worker (pid %s)", browser, record.pid)
        return record

    def respawn(self, record: WorkerRecord) -> Optional[WorkerRecord]:
        """Replace a dead worker with one for the same browser, within the restart budget."""
        used = self.restarts.get(record.browser, 0)
        if used >= self.config.max_worker_restarts:
            logger.error("Not restarting %s worker: restart limit (%d) reached",
                         record.browser, self.config.max_worker_restarts)
            return None
        self.restarts[record.browser] = used + 1
        return self.spawn(record.browser, crash_count=record.crash_count + 1)

    def remove(self, record: WorkerRecord) -> None:
        if record in self.workers:
            self.workers.remove(record)
        try:
            record.conn.close()
        except OSError:
            pass

    def workers_for(self, browser: str) -> list[WorkerRecord]:
        return [w for w in self.workers if w.browser == browser]

    def idle_workers(self) -> list[WorkerRecord]:
        return [w for w in self.workers if w.is_idle]

    def send(self, record: WorkerRecord, message) -> bool:
        try:
            record.conn.send(encode_message(message))
            return True
        except (BrokenPipeError, EOFError, OSError) as e:
            logger.debug("Cannot reach %s worker (pid %s): %s", record.browser, record.pid, e)
            record.conn_closed = True
            return False

    def wait(self, timeout: float) -> list[PoolEvent]:
        """Block until a worker sends a message or exits, or the timeout passes."""
        by_object = {}
        for record in self.workers:
            if not record.conn_closed:
                by_object[record.conn] = record
            by_object[record.process.sentinel] = record
        if not by_object:
            time.sleep(timeout)
            return []

        ready = wait_for_objects(list(by_object), timeout)
        events: list[PoolEvent] = []
        for obj in ready:
            record = by_object[obj]
            if obj is record.conn and record.process.sentinel not in ready:
                self._receive(record, events)
        for obj in ready:
            record = by_object[obj]
            if obj is record.process.sentinel:
                # A report sent right before exiting must be seen before the exit
                while not record.conn_closed and self._poll(record):
                    self._receive(record, events)
                record.process.join(0)
                events.append(PoolEvent(record, "exit", exit_code=record.process.exitcode))
        return events

    @staticmethod
    def _poll(record: WorkerRecord) -> bool:
        try:
            return record.conn.poll()
        except (EOFError, OSError):
            record.conn_closed = True
            return False

    @staticmethod
    def _receive(record: WorkerRecord, events: list[PoolEvent]) -> None:
        try:
            events.append(PoolEvent(record, "message", message=decode_message(record.conn.recv())))
        except (EOFError, OSError):
            record.conn_closed = True

    def broadcast_shutdown(self) -> None:
        for record in self.workers:
            if not record.conn_closed:
                self.send(record, ShutdownMessage())

    def shutdown(self, timeout: float = 5.0) -> None:
        """Ask every worker to stop, then terminate whatever is still alive."""
        if not self.workers:
            return
        logger.debug("Shutting down %d workers", len(self.workers))
        self.broadcast_shutdown()
        deadline = time.monotonic() + timeout
        for record in self.workers:
            record.process.join(max(0.0, deadline - time.monotonic()))
        for record in self.workers:
            if record.process.is_alive():
                logger.warning("Terminating %s worker (pid %s)", record.browser, record.pid)
                record.process.terminate()
                record.process.join(1.0)
            if record.process.is_alive():
                record.process.kill()
                record.process.join(1.0)
        for record in list(self.workers):
            self.remove(record)
