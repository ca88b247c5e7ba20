from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from scene_studio.config import ApiSettings, PollerSettings, RetrySettings, Settings
from scene_studio.orchestrator.descriptors import DescriptorTimeouts

pytestmark = [
    allure.epic("Generation Engine"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch) -> None:
    for name in [key for key in os.environ if key.startswith("SCENE_STUDIO_")]:
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".scene_studio.db")
    assert settings.concurrency.generation_limit == 3
    assert settings.concurrency.image_limit == 2
    assert settings.concurrency.review_limit == 2
    assert settings.retry.max_attempts == 3
    assert settings.retry.review_max_attempts == 1
    assert settings.poller.interval_seconds == 5.0
    assert settings.poller.max_attempts == 120
    assert settings.sweeper.description_timeout_seconds == 60
    assert settings.sweeper.primary_image_timeout_seconds == 300
    assert settings.sweeper.variant_image_timeout_seconds == 180
    assert settings.sweeper.storyboard_timeout_seconds == 240
    assert settings.video_timeout_seconds == 600


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SCENE_STUDIO_GENERATION_LIMIT", "5")
    monkeypatch.setenv("SCENE_STUDIO_POLL_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("SCENE_STUDIO_POLL_MAX_ATTEMPTS", "10")
    monkeypatch.setenv("SCENE_STUDIO_API_BASE_URL", " https://api.example.com ")

    settings = Settings.from_env(db_path=tmp_path / "studio.db")

    assert settings.db_path == tmp_path / "studio.db"
    assert settings.concurrency.generation_limit == 5
    assert settings.api.base_url == "https://api.example.com"
    assert settings.video_timeout_seconds == 25


def test_validate_rejects_non_positive_limits() -> None:
    settings = Settings(retry=RetrySettings(max_attempts=0))

    with pytest.raises(ValueError, match="SCENE_STUDIO_MAX_ATTEMPTS"):
        settings.validate()


def test_validate_rejects_negative_poll_interval() -> None:
    settings = Settings(poller=PollerSettings(interval_seconds=-1))

    with pytest.raises(ValueError, match="SCENE_STUDIO_POLL_INTERVAL_SECONDS"):
        settings.validate()


def test_validate_for_http_requires_base_url() -> None:
    with pytest.raises(ValueError, match="--echo"):
        Settings().validate_for_http()


def test_validate_for_http_rejects_relative_url() -> None:
    settings = Settings(api=ApiSettings(base_url="api.example.com"))

    with pytest.raises(ValueError, match="Invalid SCENE_STUDIO_API_BASE_URL"):
        settings.validate_for_http()


def test_descriptor_timeouts_follow_settings() -> None:
    settings = Settings(poller=PollerSettings(interval_seconds=5.0, max_attempts=12))

    timeouts = DescriptorTimeouts.from_settings(settings)

    assert timeouts.for_kind("description").total_seconds() == 60
    assert timeouts.for_kind("primary_image").total_seconds() == 300
    assert timeouts.for_kind("variant_image").total_seconds() == 180
    assert timeouts.for_kind("storyboard").total_seconds() == 240
    assert timeouts.for_kind("video_job").total_seconds() == 60
    assert timeouts.for_kind("something_new").total_seconds() == 300
