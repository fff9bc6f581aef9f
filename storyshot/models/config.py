"""Configuration models for storyshot."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ViewportConfig(BaseModel):
    width: int = 1024
    height: int = 720


class BrowserConfig(BaseModel):
    """Capabilities of one remote browser environment.

    Frozen: a worker's capabilities never change once its session starts.
    """

    model_config = ConfigDict(frozen=True)

    browser_name: str = "chromium"  # chromium, firefox, webkit
    # Expected version, used for quirks when the browser reports none
    version: Optional[str] = None
    # Label only, shown in logs
    platform: Optional[str] = None
    grid_url: Optional[str] = None
    storybook_url: Optional[str] = None
    limit: int = 1
    viewport: Optional[ViewportConfig] = None
    globals: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    launch_options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("browser_name")
    @classmethod
    def check_engine(cls, v: str) -> str:
        if v not in ("chromium", "firefox", "webkit"):
            raise ValueError(f"Unknown browser engine '{v}'")
        return v

    @field_validator("limit")
    @classmethod
    def check_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("limit must be at least 1")
        return v

    @field_validator("grid_url", mode="before")
    @classmethod
    def resolve_env_grid_url(cls, v: Optional[str]) -> Optional[str]:
        return _resolve_env(v)


def _resolve_env(v):
    if isinstance(v, str) and v.startswith("env:"):
        env_var = v[4:]
        resolved = os.environ.get(env_var)
        if resolved is None:
            raise ValueError(f"Environment variable '{env_var}' not set")
        return resolved
    return v


class HooksConfig(BaseModel):
    """``package.module:function`` callables run around a test run."""

    before: Optional[str] = None  # before any worker starts
    after: Optional[str] = None  # after the workers have shut down, even on failure


class RunnerConfig(BaseModel):
    # Target
    storybook_url: str = "http://localhost:6006"
    grid_url: Optional[str] = None
    resolve_storybook_url: Optional[str] = None  # "package.module:function"
    hooks: HooksConfig = Field(default_factory=HooksConfig)

    # Browsers, keyed by the name used in test paths and image files
    browsers: dict[str, BrowserConfig] = Field(
        default_factory=lambda: {"chromium": BrowserConfig(browser_name="chromium")}
    )

    # Stories
    stories_file: str = "stories.json"

    # Execution
    max_retries: int = 0
    max_worker_restarts: int = 3
    shutdown_grace_seconds: float = 10.0
    page_load_timeout_seconds: float = 5.0
    script_timeout_seconds: float = 60.0
    page_source_timeout_seconds: float = 30.0

    # Images
    screen_dir: str = "./images"
    report_dir: str = "./report"
    diff_tolerance: float = 0.0

    @field_validator("grid_url", mode="before")
    @classmethod
    def resolve_env_grid_url(cls, v: Optional[str]) -> Optional[str]:
        return _resolve_env(v)

    @field_validator("max_retries", "max_worker_restarts")
    @classmethod
    def check_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    def model_post_init(self, __context) -> None:
        # Browsers inherit the global grid and storybook addresses
        for name, browser in list(self.browsers.items()):
            updates = {}
            if browser.grid_url is None and self.grid_url:
                updates["grid_url"] = self.grid_url
            if browser.storybook_url is None:
                updates["storybook_url"] = self.storybook_url
            if updates:
                self.browsers[name] = browser.model_copy(update=updates)

    @classmethod
    def load(cls, path: str | Path) -> "RunnerConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = json.load(f)
        return cls(**data)

    def save(self, path: str | Path) -> None:
        """Save config to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(exclude_none=True), f, indent=2)
