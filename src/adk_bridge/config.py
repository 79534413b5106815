from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any

DEFAULT_APP_NAME = "orchestrator"
DEFAULT_USER_ID = "anonymous"
SESSION_MAX_AGE_SECONDS = 24 * 60 * 60


@dataclass(slots=True, frozen=True)
class BridgeConfig:
    """Connection and behavior settings shared by every bridge component.

    Attributes:
        base_url: Root URL of the agent runtime.
        app_name: Agent application name used in session paths and run requests.
        user_id: Client identity sessions are created for.
        timeout: Hard per-request timeout in seconds; also bounds each stream read.
        retries: Retry attempts for transient connection failures.
        backoff_base: Delay before the first retry; doubles per attempt.
        backoff_max: Upper bound for a single retry delay.
        session_max_age: Freshness window for a cached session, in seconds.
        session_file: Optional JSON file used to persist the session handle.
        stream_buffer: Maximum records buffered between network and consumer.
        document_batch_size: Uploads processed concurrently per batch.
    """

    base_url: str
    app_name: str = DEFAULT_APP_NAME
    user_id: str = DEFAULT_USER_ID
    timeout: float = 30.0
    retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    session_max_age: float = SESSION_MAX_AGE_SECONDS
    session_file: str | None = None
    stream_buffer: int = 64
    document_batch_size: int = 3

    def __post_init__(self) -> None:
        if not self.base_url:
            raise ValueError("ADK service base_url is required")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.retries < 0:
            raise ValueError("retries must not be negative")
        if self.stream_buffer < 1:
            raise ValueError("stream_buffer must be at least 1")
        if self.document_batch_size < 1:
            raise ValueError("document_batch_size must be at least 1")

    @classmethod
    def from_env(cls, **overrides: Any) -> BridgeConfig:
        """Build a config from `ADK_*` environment variables.

        Keyword overrides take precedence over the environment.
        """
        values: dict[str, Any] = {
            "base_url": os.getenv("ADK_SERVICE_URL", ""),
            "app_name": os.getenv("ADK_APP_NAME") or DEFAULT_APP_NAME,
            "user_id": os.getenv("ADK_USER_ID") or DEFAULT_USER_ID,
            "session_file": os.getenv("ADK_SESSION_FILE") or None,
        }
        timeout = os.getenv("ADK_TIMEOUT")
        if timeout:
            values["timeout"] = float(timeout)
        retries = os.getenv("ADK_RETRIES")
        if retries:
            values["retries"] = int(retries)

        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"unknown config fields: {sorted(unknown)}")
        values.update(overrides)
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> BridgeConfig:
        return replace(self, **overrides)
