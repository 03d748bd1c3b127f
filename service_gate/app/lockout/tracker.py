"""
Per-account failed-login lockout.

State machine per account::

    Unlocked(n) --failure--> Unlocked(n+1)        if n+1 < max_attempts
    Unlocked(n) --failure--> Locked(now+duration) otherwise
    Unlocked(n) --success--> Unlocked(0)
    Locked(t)   --attempt, now <  t--> Locked(t)  (rejected, nothing recorded)
    Locked(t)   --failure, now >= t--> Unlocked(1), or Locked again if max_attempts == 1
    Locked(t)   --success, now >= t--> Unlocked(0)

Transitions are pure functions; ``LockoutTracker`` applies them through the
store's compare-and-set, retrying when another request changed the state
in between, so concurrent failures are never undercounted.
"""

import json
from dataclasses import dataclass, replace
from typing import Optional, Tuple, TYPE_CHECKING

from shared.clock import Clock
from shared.errors import AccountLockedError, BackendCorrupt, BackendUnavailable
from shared.logging import get_logger

from ..storage.base import StorageBackend

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass
class LockoutState:
    """Failed-attempt counter and lock for one account."""

    account_key: str
    failed_attempts: int = 0
    locked_until: Optional[float] = None

    def is_locked(self, now: float) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def encode(self) -> bytes:
        return json.dumps({
            "account_key": self.account_key,
            "failed_attempts": self.failed_attempts,
            "locked_until": self.locked_until,
        }).encode("utf-8")

    @classmethod
    def decode(cls, key: str, raw: bytes) -> "LockoutState":
        try:
            payload = json.loads(raw)
            locked_until = payload["locked_until"]
            return cls(
                account_key=str(payload["account_key"]),
                failed_attempts=int(payload["failed_attempts"]),
                locked_until=float(locked_until) if locked_until is not None else None,
            )
        except (ValueError, TypeError, KeyError) as exc:
            raise BackendCorrupt(key, f"Undecodable lockout state: {exc}")


@dataclass
class LockoutResult:
    """What an attempt did to an account."""

    state: LockoutState
    accepted: bool          # False when the attempt hit an active lock
    locked_now: bool = False


def apply_failure(state: LockoutState, now: float, max_attempts: int,
                  lockout_seconds: float) -> Tuple[LockoutState, LockoutResult]:
    if state.is_locked(now):
        return state, LockoutResult(state=state, accepted=False)

    # An expired lock means this attempt starts a fresh count
    attempts = 1 if state.locked_until is not None else state.failed_attempts + 1
    locked_until = now + lockout_seconds if attempts >= max_attempts else None
    new_state = replace(state, failed_attempts=attempts, locked_until=locked_until)
    return new_state, LockoutResult(state=new_state, accepted=True, locked_now=locked_until is not None)


def apply_success(state: LockoutState, now: float) -> Tuple[LockoutState, LockoutResult]:
    if state.is_locked(now):
        return state, LockoutResult(state=state, accepted=False)

    new_state = replace(state, failed_attempts=0, locked_until=None)
    return new_state, LockoutResult(state=new_state, accepted=True)


class LockoutTracker:
    """Failed-login lockout backed by a storage backend."""

    def __init__(self,
                 store: StorageBackend,
                 clock: Optional[Clock] = None,
                 max_attempts: int = 5,
                 lockout_seconds: float = 7200.0,
                 metrics: Optional["MetricsCollector"] = None,
                 max_cas_attempts: int = 32):
        self.store = store
        self.clock = clock or Clock()
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.metrics = metrics
        self.max_cas_attempts = max_cas_attempts
        self.logger = get_logger("gate.lockout")

    def _make_key(self, account_key: str) -> str:
        return f"lockout:{account_key}"

    async def _purge(self, key: str, account_key: str, error: str) -> None:
        self.logger.warning("Purging corrupt lockout state", account=account_key, error=error)
        try:
            await self.store.delete(key)
        except BackendUnavailable as exc:
            self.logger.error("Failed to purge corrupt lockout state", account=account_key, error=exc.message)

    async def _read(self, account_key: str) -> Tuple[Optional[bytes], LockoutState]:
        key = self._make_key(account_key)
        try:
            raw = await self.store.get(key)
        except BackendCorrupt as exc:
            # Unreadable at the store level (e.g. wrong Redis type)
            await self._purge(key, account_key, exc.message)
            return None, LockoutState(account_key=account_key)
        if raw is None:
            return None, LockoutState(account_key=account_key)
        try:
            return raw, LockoutState.decode(key, raw)
        except BackendCorrupt as exc:
            # Overwritten by the next compare-and-set
            self.logger.warning("Discarding corrupt lockout state", account=account_key, error=exc.message)
            return raw, LockoutState(account_key=account_key)

    async def _apply(self, account_key: str, transition) -> LockoutResult:
        key = self._make_key(account_key)
        for _ in range(self.max_cas_attempts):
            raw, state = await self._read(account_key)
            new_state, result = transition(state, self.clock.now())
            if not result.accepted or new_state == state:
                return result
            if await self.store.compare_and_set(key, raw, new_state.encode(), self.lockout_seconds):
                return result
        raise BackendUnavailable("lockout", f"Gave up after {self.max_cas_attempts} conflicting updates")

    def _event(self, event: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("lockout_events_total", event=event)

    async def record_failure(self, account_key: str) -> Optional[LockoutResult]:
        """Count a failed credential check; None if the state is unreachable."""
        try:
            result = await self._apply(
                account_key,
                lambda state, now: apply_failure(state, now, self.max_attempts, self.lockout_seconds),
            )
        except (BackendUnavailable, BackendCorrupt) as exc:
            self.logger.error("Failed to record login failure", account=account_key, error=exc.message)
            return None

        if not result.accepted:
            self._event("rejected_locked")
        elif result.locked_now:
            self._event("locked")
            self.logger.warning(
                "Account locked after failed attempts",
                account=account_key,
                failed_attempts=result.state.failed_attempts,
                locked_until=result.state.locked_until,
            )
        else:
            self._event("failure")
        return result

    async def record_success(self, account_key: str) -> Optional[LockoutResult]:
        """Reset the counter after a successful credential check."""
        try:
            result = await self._apply(account_key, apply_success)
        except (BackendUnavailable, BackendCorrupt) as exc:
            self.logger.error("Failed to reset login attempts", account=account_key, error=exc.message)
            return None

        self._event("success" if result.accepted else "rejected_locked")
        return result

    async def state(self, account_key: str) -> LockoutState:
        _, state = await self._read(account_key)
        return state

    async def is_locked(self, account_key: str) -> bool:
        """Whether attempts for the account must be rejected right now."""
        try:
            state = await self.state(account_key)
        except (BackendUnavailable, BackendCorrupt) as exc:
            self.logger.error("Lockout state unavailable, treating account as unlocked",
                              account=account_key, error=exc.message)
            return False
        return state.is_locked(self.clock.now())

    async def check(self, account_key: str) -> None:
        """Raise AccountLockedError while the account is locked."""
        try:
            state = await self.state(account_key)
        except (BackendUnavailable, BackendCorrupt) as exc:
            self.logger.error("Lockout state unavailable, treating account as unlocked",
                              account=account_key, error=exc.message)
            return

        now = self.clock.now()
        if state.is_locked(now):
            self._event("rejected_locked")
            self.logger.warning("Rejected attempt on locked account", account=account_key,
                                locked_until=state.locked_until)
            raise AccountLockedError(account_key, state.locked_until, state.locked_until - now)
