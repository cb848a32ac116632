from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import math
import threading
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.core.config import Settings, get_settings
from caseguard.domain.models import Identity, LoginAttempt, Role
from caseguard.domain.outcomes import Allowed, RateLimited, RejectReason
from caseguard.services.audit import RequestOrigin


logger = logging.getLogger(__name__)

ACTION_LOGIN = "login"
ACTION_RECORD_VIEW = "record_view"
ACTION_API = "api"

# Only guessing failures count toward lockout; expired, inactive and locked rejections do not.
_COUNTED_FAILURES = (RejectReason.INVALID_CREDENTIALS.value, RejectReason.MFA_INVALID.value)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    # Throttle keys ignore case and surrounding whitespace so variants share a window.
    return email.strip().lower()


@dataclass(frozen=True)
class WindowPolicy:
    # Allow max_events per window; the next event inside the window trips.
    max_events: int
    window: timedelta


@dataclass
class RateWindow:
    count: int
    window_start: datetime


@dataclass(frozen=True)
class LockoutState:
    failed_count: int
    locked_until: datetime | None
    triggered: bool


def _retry_after_s(window: RateWindow, policy: WindowPolicy, now: datetime) -> int:
    remaining = (window.window_start + policy.window - now).total_seconds()
    return max(1, math.ceil(remaining))


class RateWindowStore:
    """In-process sliding windows keyed by (action, subject).

    Keys are spread over independently locked shards so check-and-increment
    is atomic per subject without serializing unrelated subjects.
    """

    def __init__(self, shards: int = 64) -> None:
        self._shards: list[tuple[dict[tuple[str, str], RateWindow], threading.Lock]] = [
            ({}, threading.Lock()) for _ in range(max(1, shards))
        ]

    def _shard(self, key: tuple[str, str]) -> tuple[dict[tuple[str, str], RateWindow], threading.Lock]:
        return self._shards[hash(key) % len(self._shards)]

    def hit(self, action: str, subject: str, policy: WindowPolicy, now: datetime) -> RateWindow:
        # Increment the subject's window, restarting it once the previous one elapsed.
        key = (action, subject)
        windows, lock = self._shard(key)
        with lock:
            current = windows.get(key)
            if current is None or now - current.window_start > policy.window:
                current = RateWindow(count=1, window_start=now)
                windows[key] = current
            else:
                current.count += 1
            return RateWindow(count=current.count, window_start=current.window_start)

    def peek(self, action: str, subject: str, policy: WindowPolicy, now: datetime) -> RateWindow | None:
        key = (action, subject)
        windows, lock = self._shard(key)
        with lock:
            current = windows.get(key)
            if current is None or now - current.window_start > policy.window:
                return None
            return RateWindow(count=current.count, window_start=current.window_start)

    def clear(self, action: str, subject: str) -> None:
        key = (action, subject)
        windows, lock = self._shard(key)
        with lock:
            windows.pop(key, None)

    def sweep(self, policies: dict[str, WindowPolicy], now: datetime) -> int:
        # Drop windows that can no longer affect a decision.
        removed = 0
        for windows, lock in self._shards:
            with lock:
                expired = [
                    key
                    for key, window in windows.items()
                    if key[0] not in policies or now - window.window_start > policies[key[0]].window
                ]
                for key in expired:
                    del windows[key]
                removed += len(expired)
        return removed

    def __len__(self) -> int:
        total = 0
        for windows, lock in self._shards:
            with lock:
                total += len(windows)
        return total


class AbuseGuard:
    """Rate limiting and account lockout accounting.

    Sliding windows live in process memory; lockout state is persisted on the
    identity and derived from recorded login attempts. Callers own the
    transaction and any audit entry for the decisions returned here.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        store: RateWindowStore | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock or _utc_now
        self._store = store or RateWindowStore(self._settings.rl_lock_shards)
        self.policies: dict[str, WindowPolicy] = {
            ACTION_LOGIN: WindowPolicy(
                self._settings.rl_login_max_events, timedelta(seconds=self._settings.rl_login_window_s)
            ),
            ACTION_RECORD_VIEW: WindowPolicy(
                self._settings.rl_view_max_events, timedelta(seconds=self._settings.rl_view_window_s)
            ),
            ACTION_API: WindowPolicy(
                self._settings.rl_api_max_events, timedelta(seconds=self._settings.rl_api_window_s)
            ),
        }

    def now(self) -> datetime:
        return self._clock()

    def _consume(self, action: str, subject: str) -> Allowed | RateLimited:
        policy = self.policies[action]
        now = self._clock()
        window = self._store.hit(action, subject, policy, now)
        if window.count > policy.max_events:
            retry_after = _retry_after_s(window, policy, now)
            logger.info(
                "rate_limit_tripped action=%s subject=%s count=%s retry_after_s=%s",
                action,
                subject,
                window.count,
                retry_after,
            )
            return RateLimited(retry_after_s=retry_after)
        return Allowed(count=window.count, remaining=policy.max_events - window.count)

    def consume_record_view(self, identity_id: str, role: str) -> Allowed | RateLimited:
        # Administrators are exempt from the record view budget.
        if role == Role.ADMIN.value:
            return Allowed(count=0, remaining=self.policies[ACTION_RECORD_VIEW].max_events)
        return self._consume(ACTION_RECORD_VIEW, identity_id)

    def consume_api_call(self, identity_id: str) -> Allowed | RateLimited:
        return self._consume(ACTION_API, identity_id)

    def record_login_failure(self, email: str) -> Allowed | RateLimited:
        return self._consume(ACTION_LOGIN, normalize_email(email))

    def login_throttled(self, email: str) -> RateLimited | None:
        # Block further attempts once the failure budget for this email is spent.
        policy = self.policies[ACTION_LOGIN]
        now = self._clock()
        window = self._store.peek(ACTION_LOGIN, normalize_email(email), policy, now)
        if window is None or window.count < policy.max_events:
            return None
        return RateLimited(retry_after_s=_retry_after_s(window, policy, now))

    def login_failures_remaining(self, email: str) -> int:
        policy = self.policies[ACTION_LOGIN]
        window = self._store.peek(ACTION_LOGIN, normalize_email(email), policy, self._clock())
        used = window.count if window else 0
        return max(0, policy.max_events - used)

    def clear_login_failures(self, email: str) -> None:
        self._store.clear(ACTION_LOGIN, normalize_email(email))

    def sweep(self) -> int:
        removed = self._store.sweep(self.policies, self._clock())
        if removed:
            logger.info("rate_windows_swept removed=%s", removed)
        return removed

    @property
    def tracked_windows(self) -> int:
        return len(self._store)

    def is_locked(self, identity: Identity) -> bool:
        return identity.locked_until is not None and identity.locked_until > self._clock()

    def seconds_until_unlock(self, identity: Identity) -> int:
        if not self.is_locked(identity):
            return 0
        return max(1, math.ceil((identity.locked_until - self._clock()).total_seconds()))

    def minutes_until_unlock(self, identity: Identity) -> int:
        return math.ceil(self.seconds_until_unlock(identity) / 60)

    async def record_login_attempt(
        self,
        session: AsyncSession,
        *,
        email: str,
        identity: Identity | None,
        successful: bool,
        failure_reason: str | None,
        origin: RequestOrigin,
    ) -> LoginAttempt:
        attempt = LoginAttempt(
            email=email,
            identity_id=identity.id if identity else None,
            successful=successful,
            failure_reason=failure_reason,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
            attempted_at=self._clock(),
        )
        session.add(attempt)
        await session.flush()
        return attempt

    async def evaluate_lockout(self, session: AsyncSession, identity: Identity) -> LockoutState:
        """Recount recent failures for ``identity`` and lock it past the threshold.

        Only failures inside the trailing window and after the last successful
        login count. Mutates the identity; the caller commits.
        """
        now = self._clock()
        since = now - timedelta(minutes=self._settings.lockout_window_minutes)
        if identity.last_login_at is not None and identity.last_login_at > since:
            since = identity.last_login_at
        failed = await session.scalar(
            select(func.count())
            .select_from(LoginAttempt)
            .where(
                LoginAttempt.identity_id == identity.id,
                LoginAttempt.successful.is_(False),
                LoginAttempt.failure_reason.in_(_COUNTED_FAILURES),
                LoginAttempt.attempted_at > since,
            )
        )
        failed_count = int(failed or 0)
        identity.failed_login_attempts = failed_count
        triggered = False
        if failed_count >= self._settings.lockout_max_failed_attempts and not self.is_locked(identity):
            identity.locked_until = now + timedelta(minutes=self._settings.lockout_duration_minutes)
            triggered = True
            logger.warning(
                "account_locked identity_id=%s failed_count=%s locked_until=%s",
                identity.id,
                failed_count,
                identity.locked_until.isoformat(),
            )
        return LockoutState(failed_count=failed_count, locked_until=identity.locked_until, triggered=triggered)

    def clear_lockout(self, identity: Identity) -> None:
        identity.failed_login_attempts = 0
        identity.locked_until = None

    async def is_suspicious_ip(self, session: AsyncSession, ip_address: str | None) -> bool:
        # Many failures from one address across any accounts suggests credential stuffing.
        if not ip_address:
            return False
        since = self._clock() - timedelta(minutes=self._settings.suspicious_ip_window_minutes)
        failed = await session.scalar(
            select(func.count())
            .select_from(LoginAttempt)
            .where(
                LoginAttempt.ip_address == ip_address,
                LoginAttempt.successful.is_(False),
                LoginAttempt.attempted_at > since,
            )
        )
        return int(failed or 0) >= self._settings.suspicious_ip_max_failures
