"""Runtime configuration for the group chat worker."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from groupchat.jobs.models import ContextPolicy
from groupchat.jobs.pricing import PRICING_ENV, ModelCoinPricing, parse_pricing_mapping

BACKEND_NAMES = ("echo", "openai")


@dataclass(slots=True)
class WorkerSettings:
    """Queue worker settings."""

    worker_id: str = "worker-local"
    poll_interval_seconds: float = 2.0
    max_idle_polls: int = 1
    stale_after_seconds: int = 900

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.stale_after_seconds)


@dataclass(slots=True)
class ContextWindowSettings:
    """Context window bounds applied before inference."""

    max_turns: int = 5
    max_tokens: int = 1024 * 200
    target_tokens: int = 2000

    def to_policy(self) -> ContextPolicy:
        return ContextPolicy(
            max_turns=self.max_turns,
            max_tokens=self.max_tokens,
            target_tokens=self.target_tokens,
        )


@dataclass(slots=True)
class PricingSettings:
    """Coin price overrides keyed by model id (``*`` for any model)."""

    overrides: dict[str, ModelCoinPricing] = field(default_factory=dict)


@dataclass(slots=True)
class FreeChatSettings:
    """Daily free request allowance per model."""

    enabled: bool = True
    daily_limits: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class BackendSettings:
    """Inference backend selection and connection settings."""

    name: str = "echo"
    base_url: str = "https://api.openai.com/v1"
    api_key: str | None = None
    timeout_seconds: float = 120.0
    max_retries: int = 2


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".groupchat.db")
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    context_window: ContextWindowSettings = field(default_factory=ContextWindowSettings)
    pricing: PricingSettings = field(default_factory=PricingSettings)
    free_chat: FreeChatSettings = field(default_factory=FreeChatSettings)
    backend: BackendSettings = field(default_factory=BackendSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("GROUPCHAT_DB_PATH", ".groupchat.db")),
            worker=WorkerSettings(
                worker_id=os.getenv("GROUPCHAT_WORKER_ID", f"worker-{socket.gethostname()}"),
                poll_interval_seconds=float(
                    os.getenv("GROUPCHAT_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                max_idle_polls=int(os.getenv("GROUPCHAT_WORKER_MAX_IDLE_POLLS", "1")),
                stale_after_seconds=int(os.getenv("GROUPCHAT_STALE_AFTER_SECONDS", "900")),
            ),
            context_window=ContextWindowSettings(
                max_turns=int(os.getenv("GROUPCHAT_CONTEXT_MAX_TURNS", "5")),
                max_tokens=int(os.getenv("GROUPCHAT_CONTEXT_MAX_TOKENS", str(1024 * 200))),
                target_tokens=int(os.getenv("GROUPCHAT_CONTEXT_TARGET_TOKENS", "2000")),
            ),
            pricing=PricingSettings(
                overrides=parse_pricing_mapping(os.getenv(PRICING_ENV, "")),
            ),
            free_chat=FreeChatSettings(
                enabled=_env_bool("GROUPCHAT_FREE_CHAT_ENABLED", default=True),
                daily_limits=_collect_free_chat_limits(),
            ),
            backend=BackendSettings(
                name=os.getenv("GROUPCHAT_BACKEND", "echo").strip().lower(),
                base_url=os.getenv("GROUPCHAT_OPENAI_BASE_URL", "https://api.openai.com/v1"),
                api_key=os.getenv("GROUPCHAT_OPENAI_API_KEY") or None,
                timeout_seconds=float(os.getenv("GROUPCHAT_BACKEND_TIMEOUT_SECONDS", "120")),
                max_retries=int(os.getenv("GROUPCHAT_BACKEND_MAX_RETRIES", "2")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on settings the worker cannot run with."""

        if self.worker.stale_after_seconds <= 0:
            raise ValueError("GROUPCHAT_STALE_AFTER_SECONDS must be > 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("GROUPCHAT_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.max_idle_polls <= 0:
            raise ValueError("GROUPCHAT_WORKER_MAX_IDLE_POLLS must be > 0.")
        if self.context_window.max_turns <= 0:
            raise ValueError("GROUPCHAT_CONTEXT_MAX_TURNS must be > 0.")
        if self.context_window.max_tokens <= 0:
            raise ValueError("GROUPCHAT_CONTEXT_MAX_TOKENS must be > 0.")
        if self.context_window.target_tokens <= 0:
            raise ValueError("GROUPCHAT_CONTEXT_TARGET_TOKENS must be > 0.")
        if self.context_window.target_tokens > self.context_window.max_tokens:
            raise ValueError(
                "GROUPCHAT_CONTEXT_TARGET_TOKENS must not exceed GROUPCHAT_CONTEXT_MAX_TOKENS.",
            )
        if self.backend.name not in BACKEND_NAMES:
            raise ValueError(
                f"Unknown GROUPCHAT_BACKEND {self.backend.name!r}. "
                f"Expected one of: {', '.join(BACKEND_NAMES)}.",
            )
        if self.backend.name == "openai" and not self.backend.base_url.strip():
            raise ValueError("GROUPCHAT_OPENAI_BASE_URL is required for the openai backend.")


def _collect_free_chat_limits() -> dict[str, int]:
    raw = os.getenv("GROUPCHAT_FREE_CHAT_LIMITS", "").strip()
    if not raw:
        return {}

    limits: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(
                "Invalid GROUPCHAT_FREE_CHAT_LIMITS entry: "
                f"{token!r}. Expected format '<model_id>:<daily_requests>'.",
            )
        model_id, count_raw = token.rsplit(":", 1)
        model_id = model_id.strip()
        count_raw = count_raw.strip()
        try:
            count = int(count_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid GROUPCHAT_FREE_CHAT_LIMITS value for {model_id!r}: {count_raw!r}",
            ) from error
        if count < 0:
            raise ValueError(
                "Invalid GROUPCHAT_FREE_CHAT_LIMITS value for "
                f"{model_id!r}: {count!r} (must be >= 0)",
            )
        limits[model_id] = count
    return limits


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
