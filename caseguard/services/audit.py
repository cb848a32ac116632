from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import threading
from typing import Any, Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.requests import Request

from caseguard.core.config import Settings, get_settings
from caseguard.domain.models import AuditEvent


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["password", "token", "secret", "authorization", "mfa_code", "otp"]
_REDACTED_VALUE = "[REDACTED]"

# Failures that defer an entry to the spool instead of failing the caller.
_DEFERRABLE_ERRORS = (SQLAlchemyError, OSError, TimeoutError, asyncio.TimeoutError)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


@dataclass(frozen=True)
class RequestOrigin:
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


SYSTEM_ORIGIN = RequestOrigin(request_id=None, ip_address="system", user_agent=None)


def get_request_context(request: Request | None) -> RequestOrigin:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return RequestOrigin()
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return RequestOrigin(request_id=request_id, ip_address=ip_address, user_agent=user_agent)


class AuditSpool(Protocol):
    def append(self, entry: dict[str, Any]) -> None:
        ...

    def drain(self) -> list[dict[str, Any]]:
        ...

    def __len__(self) -> int:
        ...


class MemorySpool:
    """Bounded in-process retry queue; overflow is logged, never silent."""

    def __init__(self, max_entries: int) -> None:
        self._entries: deque[dict[str, Any]] = deque()
        self._max_entries = max(1, max_entries)
        self._lock = threading.Lock()

    def append(self, entry: dict[str, Any]) -> None:
        with self._lock:
            if len(self._entries) >= self._max_entries:
                dropped = self._entries.popleft()
                logger.error(
                    "audit_spool_overflow dropped_event_type=%s dropped_occurred_at=%s",
                    dropped.get("event_type"),
                    dropped.get("occurred_at"),
                )
            self._entries.append(entry)

    def drain(self) -> list[dict[str, Any]]:
        with self._lock:
            entries = list(self._entries)
            self._entries.clear()
        return entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class FileSpool:
    """Append-only JSONL spool that survives process restarts."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    def append(self, entry: dict[str, Any]) -> None:
        line = json.dumps(entry, separators=(",", ":"), sort_keys=True)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def drain(self) -> list[dict[str, Any]]:
        with self._lock:
            if not self._path.exists():
                return []
            lines = self._path.read_text(encoding="utf-8").splitlines()
            self._path.unlink()
        entries = []
        for line in lines:
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except ValueError:
                logger.error("audit_spool_corrupt_line path=%s", self._path)
        return entries

    def __len__(self) -> int:
        with self._lock:
            if not self._path.exists():
                return 0
            with self._path.open("r", encoding="utf-8") as handle:
                return sum(1 for line in handle if line.strip())


def build_spool(settings: Settings) -> AuditSpool:
    if settings.audit_spool_path:
        return FileSpool(settings.audit_spool_path)
    return MemorySpool(settings.audit_memory_queue_max)


class AuditTrail:
    """Append-only log of gate decisions.

    Writes use their own session so an entry is never rolled back with the
    caller's transaction. A write that fails or exceeds the timeout is queued
    to the spool and the caller proceeds (fail-open); ``flush_pending``
    replays the spool.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        spool: AuditSpool | None = None,
        timeout_s: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._session_factory = session_factory
        self._spool = spool or build_spool(settings)
        self._timeout_s = timeout_s if timeout_s is not None else settings.audit_write_timeout_ms / 1000.0
        self._clock = clock or _utc_now

    @property
    def pending(self) -> int:
        return len(self._spool)

    @property
    def durable(self) -> bool:
        return isinstance(self._spool, FileSpool)

    def announce_policy(self) -> None:
        """Log the fail-open policy once at startup so operators know where deferred entries go."""
        logger.warning(
            "audit_policy fail_open=true spool=%s durable=%s timeout_ms=%s",
            type(self._spool).__name__,
            self.durable,
            int(self._timeout_s * 1000),
        )
        if not self.durable:
            logger.warning(
                "audit_spool_volatile deferred audit entries are lost if the process exits; "
                "set AUDIT_SPOOL_PATH to keep them on disk"
            )

    async def record(
        self,
        *,
        event_type: str,
        outcome: str,
        actor_id: str | None = None,
        actor_role: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        origin: RequestOrigin | None = None,
        metadata: dict[str, Any] | None = None,
        error_code: str | None = None,
        occurred_at: datetime | None = None,
    ) -> bool:
        # Returns False when the entry was deferred to the spool.
        resolved_origin = origin or RequestOrigin()
        entry = {
            "occurred_at": (occurred_at or self._clock()).isoformat(),
            "actor_id": actor_id,
            "actor_role": actor_role,
            "event_type": event_type,
            "outcome": outcome,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "request_id": resolved_origin.request_id,
            "ip_address": resolved_origin.ip_address,
            "user_agent": resolved_origin.user_agent,
            "metadata_json": sanitize_metadata(metadata or {}),
            "error_code": error_code,
        }
        try:
            await asyncio.wait_for(self._write([entry]), timeout=self._timeout_s)
        except _DEFERRABLE_ERRORS as exc:
            logger.warning(
                "audit_event_write_deferred event_type=%s request_id=%s",
                event_type,
                resolved_origin.request_id,
                exc_info=exc,
            )
            self._spool.append(entry)
            return False
        return True

    async def flush_pending(self) -> int:
        # Replay deferred entries; on failure they go back to the spool intact.
        entries = self._spool.drain()
        if not entries:
            return 0
        try:
            await asyncio.wait_for(self._write(entries), timeout=self._timeout_s)
        except _DEFERRABLE_ERRORS as exc:
            logger.warning("audit_spool_flush_failed pending=%s", len(entries), exc_info=exc)
            for entry in entries:
                self._spool.append(entry)
            return 0
        logger.info("audit_spool_flushed count=%s", len(entries))
        return len(entries)

    async def _write(self, entries: list[dict[str, Any]]) -> None:
        async with self._session_factory() as session:
            try:
                session.add_all([_to_event(entry) for entry in entries])
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise


def _to_event(entry: dict[str, Any]) -> AuditEvent:
    fields = dict(entry)
    fields["occurred_at"] = datetime.fromisoformat(fields["occurred_at"])
    fields.setdefault("created_at", _utc_now())
    return AuditEvent(**fields)
