"""Run orchestrator: builds the test registry, runs the workers, persists the status."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import signal
from pathlib import Path
from typing import Iterable, Optional

from storyshot.browser.url_resolver import load_resolver
from storyshot.master.pool import WorkerPool
from storyshot.master.runner import Runner
from storyshot.models.config import RunnerConfig
from storyshot.models.test_result import RunStatus, TestRecord
from storyshot.stories import build_test_registry, load_stories
from storyshot.worker.images import ImageStore, safe_part

logger = logging.getLogger(__name__)


class Orchestrator:
    """Coordinates one screenshot run across all configured browsers."""

    def __init__(self, config: RunnerConfig, verbose: bool = False, pool: Optional[WorkerPool] = None):
        self.config = config
        self.verbose = verbose
        self.pool = pool or WorkerPool(config, verbose=verbose)
        self.report_dir = Path(config.report_dir)
        self.runner: Optional[Runner] = None

    def run(self, browsers: Optional[Iterable[str]] = None) -> RunStatus:
        """Capture every story in every selected browser.

        The configured ``before`` hook runs first; the ``after`` hook runs
        once the workers are gone, whether or not the run succeeded.
        """
        self._run_hook("before")
        try:
            return self._run(browsers)
        finally:
            self._run_hook("after")

    def _run_hook(self, name: str) -> None:
        import_path = getattr(self.config.hooks, name)
        if not import_path:
            return
        logger.info("Running %s hook %s", name, import_path)
        result = load_resolver(import_path)()
        if inspect.isawaitable(result):
            asyncio.run(result)

    def _run(self, browsers: Optional[Iterable[str]]) -> RunStatus:
        stories = load_stories(self.config.stories_file)
        tests = build_test_registry(stories, self.config.browsers, only_browsers=browsers)
        runnable = [t for t in tests.values() if not t.skip]
        logger.info("=== %d stories x %d browsers: %d tests (%d skipped) ===",
                    len(stories), len({t.browser for t in tests.values()}),
                    len(tests), len(tests) - len(runnable))

        self.runner = Runner(self.config, tests, {s.id: s for s in stories}, self.pool)
        if not runnable:
            logger.info("Don't have any tests to run")
            status = self.runner.status()
            self._save_status(status)
            return status

        previous_handler = signal.signal(signal.SIGINT, self._handle_interrupt)
        try:
            self.pool.start(sorted({t.browser for t in runnable}, key=list(self.config.browsers).index))
            status = self.runner.run(list(tests))
        finally:
            signal.signal(signal.SIGINT, previous_handler)
            self.pool.shutdown()

        self._save_status(status)
        self._output_unnecessary_images(tests.values())
        return status

    def _handle_interrupt(self, signum, frame) -> None:
        runner = self.runner
        if runner is not None and runner.is_running and not runner.stop_requested:
            logger.warning("Interrupted, finishing running tests (Ctrl+C again to abort)")
            runner.stop()
        elif runner is not None and runner.is_running:
            logger.warning("Aborting running tests")
            runner.abort()
        else:
            raise KeyboardInterrupt

    def _save_status(self, status: RunStatus) -> Path:
        """Persist the run status next to the report images."""
        path = self.report_dir / "status.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug("Saving run status to %s", path)
        with open(path, "w") as f:
            json.dump(status.model_dump(), f, indent=2, default=str)
        return path

    def unnecessary_images(self, tests: Iterable[TestRecord]) -> list[str]:
        """Reference images that no test in the registry reads."""
        store = ImageStore(Path(self.config.screen_dir), self.report_dir)
        used = {
            "/".join(safe_part(p) for p in t.path[:-1]) + f"/{safe_part(t.browser)}.png"
            for t in tests
        }
        return sorted(store.reference_images() - used)

    def _output_unnecessary_images(self, tests: Iterable[TestRecord]) -> None:
        unused = self.unnecessary_images(tests)
        if unused:
            logger.info("Found unnecessary reference images that can be removed:")
            for image in unused:
                logger.info("  %s", image)
