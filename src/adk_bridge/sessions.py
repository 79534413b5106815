from __future__ import annotations

import json
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .client import AdkClient
from .config import SESSION_MAX_AGE_SECONDS
from .errors import AdkError, AdkSessionExpiredError, SessionValidationError
from .logging import get_logger
from .models import Session

logger = get_logger(__name__)

# Persisted handles must carry these fields with these JSON types.
_REQUIRED_STRING_FIELDS = ("id", "appName", "userId")
_REQUIRED_NUMBER_FIELDS = ("lastUpdateTime",)


class SessionStorage(ABC):
    """Persistence for one cached session handle."""

    @abstractmethod
    def load(self) -> Any:
        """Return the persisted payload, or None when nothing is stored."""
        raise NotImplementedError

    @abstractmethod
    def save(self, payload: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear(self) -> None:
        raise NotImplementedError


class MemorySessionStorage(SessionStorage):
    """Process-local storage; the handle dies with the store."""

    def __init__(self, payload: Any = None) -> None:
        self._payload = payload

    def load(self) -> Any:
        return self._payload

    def save(self, payload: dict[str, Any]) -> None:
        self._payload = dict(payload)

    def clear(self) -> None:
        self._payload = None


class FileSessionStorage(SessionStorage):
    """JSON file storage so a session survives process restarts.

    I/O and decode failures are logged and read as "nothing stored".
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Any:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("session_storage_read_failed", path=str(self._path), error=str(exc))
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            logger.warning("session_storage_corrupt", path=str(self._path), error=exc.msg)
            return None

    def save(self, payload: dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp.write_text(json.dumps(payload), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as exc:
            logger.warning("session_storage_write_failed", path=str(self._path), error=str(exc))

    def clear(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("session_storage_clear_failed", path=str(self._path), error=str(exc))


def validate_persisted(payload: Any) -> Session:
    """Structurally check a persisted handle before trusting it."""
    if not isinstance(payload, dict):
        raise SessionValidationError(
            f"persisted session is {type(payload).__name__}, expected object"
        )
    for key in _REQUIRED_STRING_FIELDS:
        if not isinstance(payload.get(key), str):
            raise SessionValidationError(f"persisted session field {key!r} must be a string")
    for key in _REQUIRED_NUMBER_FIELDS:
        value = payload.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise SessionValidationError(f"persisted session field {key!r} must be a number")
    try:
        return Session.model_validate(payload)
    except ValueError as exc:
        raise SessionValidationError(f"persisted session is invalid: {exc}") from exc


class SessionStore:
    """Owns the session handle for one conversation worker.

    A cached handle is reused only if it is fresh *and* the runtime still
    confirms it; otherwise a new session is created.
    """

    def __init__(
        self,
        client: AdkClient,
        *,
        storage: SessionStorage | None = None,
        max_age: float = SESSION_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._storage = storage if storage is not None else MemorySessionStorage()
        self._max_age = max_age
        self._clock = clock
        self._current: Session | None = None
        self._load()

    @property
    def current(self) -> Session | None:
        return self._current

    def ensure_fresh(self, now: float | None = None) -> Session:
        """Return the cached session or raise when it is past the freshness window."""
        if self._current is None:
            raise AdkSessionExpiredError("no cached session", session_id="", age_seconds=0.0)
        now = self._clock() if now is None else now
        age = now - self._current.last_update_time
        if age >= self._max_age:
            raise AdkSessionExpiredError(
                f"session {self._current.id!r} is {age / 3600:.1f}h old",
                session_id=self._current.id,
                age_seconds=age,
            )
        return self._current

    def is_valid(self, now: float | None = None) -> bool:
        """Time-based check only; expired handles are cleared."""
        if self._current is None:
            return False
        try:
            self.ensure_fresh(now)
        except AdkSessionExpiredError as exc:
            logger.info("session_expired", session_id=exc.session_id, age_seconds=exc.age_seconds)
            self.clear()
            return False
        return True

    async def restore(self, session_id: str) -> Session | None:
        """Re-fetch a session from the runtime; any failure clears the cache."""
        try:
            session = await self._client.get_session(session_id)
        except AdkError as exc:
            logger.warning(
                "session_restore_failed",
                session_id=session_id,
                error=f"{exc.__class__.__name__}: {exc}",
            )
            self.clear()
            return None
        self._remember(session)
        return session

    async def create(self) -> Session:
        """Create and cache a new session. Creation errors propagate."""
        self.clear()
        session = await self._client.create_session()
        self._remember(session)
        return session

    async def get_or_create(self) -> Session:
        current = self._current
        if current is not None and self.is_valid():
            restored = await self.restore(current.id)
            if restored is not None:
                return restored
        return await self.create()

    async def refresh(self) -> Session | None:
        if self._current is None:
            return None
        return await self.restore(self._current.id)

    def clear(self) -> None:
        self._current = None
        self._storage.clear()

    def _remember(self, session: Session) -> None:
        self._current = session
        self._storage.save(session.to_wire())

    def _load(self) -> None:
        payload = self._storage.load()
        if payload is None:
            return
        try:
            self._current = validate_persisted(payload)
        except SessionValidationError as exc:
            logger.info("persisted_session_discarded", reason=str(exc))
            self.clear()
