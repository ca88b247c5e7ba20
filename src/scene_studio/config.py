"""Runtime configuration for the generation orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class ConcurrencySettings:
    """Limiter bounds per job class."""

    generation_limit: int = 3
    image_limit: int = 2
    review_limit: int = 2


@dataclass(slots=True)
class RetrySettings:
    """Attempt budgets for the main sweep and the review pass."""

    max_attempts: int = 3
    review_max_attempts: int = 1


@dataclass(slots=True)
class PollerSettings:
    """Async video job polling settings."""

    interval_seconds: float = 5.0
    max_attempts: int = 120


@dataclass(slots=True)
class SweeperSettings:
    """Descriptor expiry settings."""

    interval_seconds: float = 5.0
    description_timeout_seconds: int = 60
    primary_image_timeout_seconds: int = 300
    variant_image_timeout_seconds: int = 180
    storyboard_timeout_seconds: int = 240


@dataclass(slots=True)
class ApiSettings:
    """Remote generation API settings."""

    base_url: str = ""
    api_key: str = ""
    request_timeout_seconds: float = 300.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".scene_studio.db")
    sqlite_busy_timeout_ms: int = 5_000
    concurrency: ConcurrencySettings = field(default_factory=ConcurrencySettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    poller: PollerSettings = field(default_factory=PollerSettings)
    sweeper: SweeperSettings = field(default_factory=SweeperSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("SCENE_STUDIO_DB_PATH", ".scene_studio.db")),
            sqlite_busy_timeout_ms=int(os.getenv("SCENE_STUDIO_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            concurrency=ConcurrencySettings(
                generation_limit=int(os.getenv("SCENE_STUDIO_GENERATION_LIMIT", "3")),
                image_limit=int(os.getenv("SCENE_STUDIO_IMAGE_LIMIT", "2")),
                review_limit=int(os.getenv("SCENE_STUDIO_REVIEW_LIMIT", "2")),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("SCENE_STUDIO_MAX_ATTEMPTS", "3")),
                review_max_attempts=int(os.getenv("SCENE_STUDIO_REVIEW_MAX_ATTEMPTS", "1")),
            ),
            poller=PollerSettings(
                interval_seconds=float(os.getenv("SCENE_STUDIO_POLL_INTERVAL_SECONDS", "5.0")),
                max_attempts=int(os.getenv("SCENE_STUDIO_POLL_MAX_ATTEMPTS", "120")),
            ),
            sweeper=SweeperSettings(
                interval_seconds=float(os.getenv("SCENE_STUDIO_SWEEP_INTERVAL_SECONDS", "5.0")),
                description_timeout_seconds=int(
                    os.getenv("SCENE_STUDIO_DESCRIPTION_TIMEOUT_SECONDS", "60"),
                ),
                primary_image_timeout_seconds=int(
                    os.getenv("SCENE_STUDIO_PRIMARY_IMAGE_TIMEOUT_SECONDS", "300"),
                ),
                variant_image_timeout_seconds=int(
                    os.getenv("SCENE_STUDIO_VARIANT_IMAGE_TIMEOUT_SECONDS", "180"),
                ),
                storyboard_timeout_seconds=int(
                    os.getenv("SCENE_STUDIO_STORYBOARD_TIMEOUT_SECONDS", "240"),
                ),
            ),
            api=ApiSettings(
                base_url=os.getenv("SCENE_STUDIO_API_BASE_URL", "").strip(),
                api_key=os.getenv("SCENE_STUDIO_API_KEY", "").strip(),
                request_timeout_seconds=float(
                    os.getenv("SCENE_STUDIO_API_REQUEST_TIMEOUT_SECONDS", "300.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if bounds or budgets are out of range."""

        limits = {
            "SCENE_STUDIO_GENERATION_LIMIT": self.concurrency.generation_limit,
            "SCENE_STUDIO_IMAGE_LIMIT": self.concurrency.image_limit,
            "SCENE_STUDIO_REVIEW_LIMIT": self.concurrency.review_limit,
            "SCENE_STUDIO_MAX_ATTEMPTS": self.retry.max_attempts,
            "SCENE_STUDIO_REVIEW_MAX_ATTEMPTS": self.retry.review_max_attempts,
            "SCENE_STUDIO_POLL_MAX_ATTEMPTS": self.poller.max_attempts,
        }
        for name, value in limits.items():
            if value <= 0:
                raise ValueError(f"{name} must be a positive integer.")
        if self.poller.interval_seconds < 0:
            raise ValueError("SCENE_STUDIO_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.sweeper.interval_seconds <= 0:
            raise ValueError("SCENE_STUDIO_SWEEP_INTERVAL_SECONDS must be > 0.")
        timeouts = {
            "SCENE_STUDIO_DESCRIPTION_TIMEOUT_SECONDS": self.sweeper.description_timeout_seconds,
            "SCENE_STUDIO_PRIMARY_IMAGE_TIMEOUT_SECONDS": (
                self.sweeper.primary_image_timeout_seconds
            ),
            "SCENE_STUDIO_VARIANT_IMAGE_TIMEOUT_SECONDS": (
                self.sweeper.variant_image_timeout_seconds
            ),
            "SCENE_STUDIO_STORYBOARD_TIMEOUT_SECONDS": self.sweeper.storyboard_timeout_seconds,
        }
        for name, value in timeouts.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")

    def validate_for_http(self) -> None:
        """Raise configuration error if the remote API endpoint is missing or invalid."""

        self.validate()
        if not self.api.base_url:
            raise ValueError(
                "Remote API base URL is required. Set SCENE_STUDIO_API_BASE_URL or pass --echo.",
            )
        parsed = urlparse(self.api.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                f"Invalid SCENE_STUDIO_API_BASE_URL: {self.api.base_url!r}. "
                "Expected an absolute URL with http:// or https:// scheme.",
            )
        if self.api.request_timeout_seconds <= 0:
            raise ValueError("SCENE_STUDIO_API_REQUEST_TIMEOUT_SECONDS must be > 0.")

    @property
    def video_timeout_seconds(self) -> int:
        """Descriptor expiry for video jobs: the whole poll budget."""

        return int(self.poller.max_attempts * self.poller.interval_seconds)

