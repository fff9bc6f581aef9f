"""Tests for the run orchestrator."""

import json
import signal
from unittest.mock import MagicMock

import pytest

from storyshot import orchestrator as orchestrator_module
from storyshot.models.config import HooksConfig
from storyshot.orchestrator import Orchestrator


def _write_stories(config, stories):
    with open(config.stories_file, "w") as f:
        json.dump(stories, f)


STORIES = [
    {"id": "button--primary", "kind": "Button", "name": "Primary"},
    {"id": "button--hidden", "kind": "Button", "name": "Hidden", "parameters": {"skip": True}},
]


class TestRun:
    def test_runs_tests_and_saves_status(self, runner_config, fake_pool, tmp_path):
        _write_stories(runner_config, STORIES)
        orchestrator = Orchestrator(runner_config, pool=fake_pool)

        status = orchestrator.run()

        assert status.success == 1
        assert status.skipped == 1
        assert status.is_success
        assert fake_pool.started_with == ["chromium"]
        assert fake_pool.shutdown_called

        saved = json.loads((tmp_path / "report" / "status.json").read_text())
        assert saved["success"] == 1
        assert [t["path"] for t in saved["tests"]] == [
            ["Button", "Primary", "chromium"],
            ["Button", "Hidden", "chromium"],
        ]

    def test_nothing_to_run(self, runner_config, fake_pool, tmp_path):
        _write_stories(runner_config, [STORIES[1]])
        orchestrator = Orchestrator(runner_config, pool=fake_pool)

        status = orchestrator.run()

        assert fake_pool.started_with is None
        assert status.total == 1
        assert status.is_success
        assert (tmp_path / "report" / "status.json").exists()

    def test_restores_interrupt_handler(self, runner_config, fake_pool):
        _write_stories(runner_config, STORIES)
        before = signal.getsignal(signal.SIGINT)

        Orchestrator(runner_config, pool=fake_pool).run()

        assert signal.getsignal(signal.SIGINT) is before

    def test_pool_shut_down_on_error(self, runner_config, fake_pool):
        _write_stories(runner_config, STORIES)

        def explode(record, message):
            raise RuntimeError("pipe broke")

        fake_pool.behaviour = explode

        with pytest.raises(RuntimeError):
            Orchestrator(runner_config, pool=fake_pool).run()
        assert fake_pool.shutdown_called

    def test_missing_stories_file(self, runner_config, fake_pool):
        with pytest.raises(FileNotFoundError):
            Orchestrator(runner_config, pool=fake_pool).run()


class TestInterrupt:
    def test_first_interrupt_stops_second_aborts(self, runner_config, fake_pool):
        orchestrator = Orchestrator(runner_config, pool=fake_pool)
        orchestrator.runner = MagicMock(is_running=True, stop_requested=False)

        orchestrator._handle_interrupt(signal.SIGINT, None)
        orchestrator.runner.stop.assert_called_once()

        orchestrator.runner.stop_requested = True
        orchestrator._handle_interrupt(signal.SIGINT, None)
        orchestrator.runner.abort.assert_called_once()

    def test_interrupt_outside_run(self, runner_config, fake_pool):
        orchestrator = Orchestrator(runner_config, pool=fake_pool)
        with pytest.raises(KeyboardInterrupt):
            orchestrator._handle_interrupt(signal.SIGINT, None)


class TestUnnecessaryImages:
    def test_lists_unused_references(self, runner_config, fake_pool, tmp_path, make_png):
        _write_stories(runner_config, STORIES)
        for parts in (["Button", "Primary", "chromium.png"], ["Button", "Removed", "chromium.png"]):
            path = tmp_path.joinpath("images", *parts)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(make_png())
        orchestrator = Orchestrator(runner_config, pool=fake_pool)

        orchestrator.run()

        assert orchestrator.unnecessary_images(orchestrator.runner.tests.values()) == [
            "Button/Removed/chromium.png",
        ]


class TestHooks:
    def _hooked_config(self, runner_config, monkeypatch, calls):
        hooks = {
            "hooks:before": lambda: calls.append("before"),
            "hooks:after": lambda: calls.append("after"),
        }
        monkeypatch.setattr(orchestrator_module, "load_resolver", hooks.__getitem__)
        return runner_config.model_copy(update={"hooks": HooksConfig(before="hooks:before", after="hooks:after")})

    def test_hooks_wrap_the_run(self, runner_config, fake_pool, monkeypatch):
        calls = []
        config = self._hooked_config(runner_config, monkeypatch, calls)
        _write_stories(config, STORIES)

        def record_send(record, message):
            calls.append("test")
            return fake_pool.succeed(record, message)

        fake_pool.behaviour = record_send
        Orchestrator(config, pool=fake_pool).run()

        assert calls == ["before", "test", "after"]

    def test_after_hook_runs_on_error(self, runner_config, fake_pool, monkeypatch):
        calls = []
        config = self._hooked_config(runner_config, monkeypatch, calls)

        with pytest.raises(FileNotFoundError):
            Orchestrator(config, pool=fake_pool).run()

        assert calls == ["before", "after"]

    def test_async_hook_is_awaited(self, runner_config, fake_pool, monkeypatch):
        calls = []

        async def before():
            calls.append("before")

        monkeypatch.setattr(orchestrator_module, "load_resolver", lambda path: before)
        config = runner_config.model_copy(update={"hooks": HooksConfig(before="hooks:before")})
        _write_stories(config, [STORIES[1]])

        Orchestrator(config, pool=fake_pool).run()

        assert calls == ["before"]
