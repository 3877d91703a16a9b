"""Configuration loader for pagerun using Pydantic settings.

Config precedence (highest wins):
  1. CLI flags (where applicable)
  2. Environment variables (PAGERUN_* with __ for nesting)
  3. settings.local.toml
  4. settings.<env>.toml
  5. settings.default.toml
"""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

_THIS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = Path(os.getenv("PAGERUN_PROJECT_ROOT", _THIS_DIR.parents[2]))
CONFIG_DIR = PROJECT_ROOT / "config"

ENV_VAR_NAME = "PAGERUN_ENV"
DEFAULT_ENV = "local"


def _resolve_env() -> str:
    return (os.getenv(ENV_VAR_NAME) or DEFAULT_ENV).strip()


def _load_toml(path: Path) -> dict[str, Any]:
    if path.is_file():
        with open(path, "rb") as f:
            return tomllib.load(f)
    return {}


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class BrowserSettings(BaseSettings):
    """Playwright browser and persistent-profile settings."""

    model_config = SettingsConfigDict(env_prefix="PAGERUN_BROWSER__")

    headless: bool = True
    executable_path: str = ""
    channel: str = ""
    profile_dir: str = "data/profile"
    viewport_width: int = 1920
    viewport_height: int = 1080
    launch_args: list[str] = Field(default_factory=lambda: ["--disable-blink-features=AutomationControlled"])
    default_timeout_ms: int = 15_000
    navigation_timeout_ms: int = 60_000


class RunnerSettings(BaseSettings):
    """Workflow interpreter behaviour."""

    model_config = SettingsConfigDict(env_prefix="PAGERUN_RUNNER__")

    ready_selector: str = "body"
    ready_timeout_ms: int = 20_000
    extraction_failed_value: str = "extraction failed"
    composite_missing_value: str = "not found"
    max_duration_sec: int = Field(default=600, ge=10)
    max_batch_size: int = Field(default=10, ge=1)
    task_retention: int = Field(default=500, ge=1)
    workflow_dir: str = "config/workflows"


class CaptureSettings(BaseSettings):
    """Long-capture stitching and scroll-to-bottom tuning."""

    model_config = SettingsConfigDict(env_prefix="PAGERUN_CAPTURE__")

    overlap_px: int = Field(default=50, ge=1)
    idle_ms: int = 500
    idle_timeout_ms: int = 10_000
    max_tiles: int = Field(default=200, ge=1)
    scroll_delta_px: int = 800
    scroll_pause_ms: int = 1_500
    stable_rounds: int = Field(default=3, ge=1)
    max_scroll_rounds: int = Field(default=60, ge=1)


class ChallengeSettings(BaseSettings):
    """Interactive-challenge detection and pause/resume configuration."""

    model_config = SettingsConfigDict(env_prefix="PAGERUN_CHALLENGE__")

    enabled: bool = True
    container_selectors: list[str] = Field(
        default_factory=lambda: [
            "#captcha_container",
            ".captcha_verify_container",
            "[role='dialog']",
        ]
    )
    keywords: list[str] = Field(
        default_factory=lambda: [
            "verify",
            "verification",
            "captcha",
            "slider",
            "drag the",
            "security check",
        ]
    )
    pause_timeout_sec: float = Field(default=900.0, gt=0)


class StorageSettings(BaseSettings):
    """Blob storage used for uploaded screenshots."""

    model_config = SettingsConfigDict(env_prefix="PAGERUN_STORAGE__")

    backend: str = "local"  # local | gcs
    local_dir: str = "data/blobs"
    public_base_url: str = ""
    gcs_bucket: str = ""
    gcs_prefix: str = ""
    key_prefix: str = "automation_screenshots"


class MonitoringSettings(BaseSettings):
    """Progress event delivery."""

    model_config = SettingsConfigDict(env_prefix="PAGERUN_MONITORING__")

    webhook_url: str = ""
    webhook_timeout_sec: float = 10.0
    jsonl_output: bool = False


class APISettings(BaseSettings):
    """API server configuration."""

    model_config = SettingsConfigDict(env_prefix="PAGERUN_API__")

    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Root pagerun settings with nested sections."""

    model_config = SettingsConfigDict(
        env_prefix="PAGERUN_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    env: str = Field(default_factory=_resolve_env)
    project_root: Path = Field(default=PROJECT_ROOT)
    debug: bool = False

    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    runner: RunnerSettings = Field(default_factory=RunnerSettings)
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    challenge: ChallengeSettings = Field(default_factory=ChallengeSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    api: APISettings = Field(default_factory=APISettings)

    @model_validator(mode="before")
    @classmethod
    def _merge_toml_files(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Layer TOML config files before env var overrides."""
        defaults = _load_toml(CONFIG_DIR / "settings.default.toml")
        env_name = (values.get("env") or os.getenv(ENV_VAR_NAME) or DEFAULT_ENV).strip()
        env_overrides = _load_toml(CONFIG_DIR / f"settings.{env_name}.toml")
        local_overrides = _load_toml(CONFIG_DIR / "settings.local.toml")

        # Merge: defaults < env-specific < local < explicit values
        merged: dict[str, Any] = {}
        for layer in (defaults, env_overrides, local_overrides, values):
            for key, val in layer.items():
                if isinstance(val, dict) and isinstance(merged.get(key), dict):
                    merged[key] = {**merged[key], **val}
                else:
                    merged[key] = val
        return merged

    @model_validator(mode="after")
    def _resolve_paths(self) -> "Settings":
        """Normalize relative paths against project_root."""
        root = self.project_root
        if not Path(self.browser.profile_dir).is_absolute():
            self.browser.profile_dir = str(root / self.browser.profile_dir)
        if not Path(self.storage.local_dir).is_absolute():
            self.storage.local_dir = str(root / self.storage.local_dir)
        if not Path(self.runner.workflow_dir).is_absolute():
            self.runner.workflow_dir = str(root / self.runner.workflow_dir)
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the singleton settings instance (cached)."""
    return Settings()
