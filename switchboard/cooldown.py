"""Per-command, per-actor cooldown ledger.

Maps command name → actor id → expiry timestamp. Entries are never
expired proactively; a check simply compares the stored expiry with
"now". The ledger is owned by the CommandDispatcher, which is the only
component that mutates it.
"""

import math
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

import structlog

logger = structlog.get_logger("switchboard.dispatch")

_DURATION = re.compile(r"^(\d+)(s|m|h|d)?$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Union[int, float, str, None]) -> float:
    """Convert a cooldown declaration to seconds.

    Numbers are taken as seconds. Strings are ``<n>`` (milliseconds),
    ``<n>s``, ``<n>m``, ``<n>h`` or ``<n>d``. Anything else is 0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return max(0.0, float(value))
    match = _DURATION.match(value.strip())
    if not match:
        return 0.0
    amount = int(match.group(1))
    unit = match.group(2)
    if unit is None:
        return amount / 1000.0
    return float(amount * _UNIT_SECONDS[unit])


@dataclass
class CooldownState:
    """Snapshot of one actor's cooldown on one command."""
    active: bool
    expires_at: Optional[float] = None
    remaining_seconds: int = 0


class CooldownLedger:
    """Cooldown expiries keyed by command, then actor.

    Args:
        clock: Monotonic time source in seconds (injectable for tests).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expiries: Dict[str, Dict[str, float]] = {}

    def now(self) -> float:
        return self._clock()

    def expiry(self, command: str, actor_id: str) -> Optional[float]:
        """Stored expiry for the pair, or None if never set."""
        return self._expiries.get(command, {}).get(actor_id)

    def remaining(self, command: str, actor_id: str, now: Optional[float] = None) -> int:
        """Whole seconds (ceiling) until the pair may run again, 0 if clear."""
        return self.get_state(command, actor_id, now).remaining_seconds

    def get_state(self, command: str, actor_id: str, now: Optional[float] = None) -> CooldownState:
        """Return a snapshot of the pair's cooldown."""
        if now is None:
            now = self.now()
        expires_at = self.expiry(command, actor_id)
        if expires_at is None or now >= expires_at:
            return CooldownState(active=False, expires_at=expires_at)
        return CooldownState(
            active=True,
            expires_at=expires_at,
            remaining_seconds=math.ceil(expires_at - now),
        )

    def check_and_set(
        self,
        command: str,
        actor_id: str,
        duration: float,
        now: Optional[float] = None,
    ) -> Optional[int]:
        """Check the cooldown and, if clear, start a new window.

        The check and the write happen in one synchronous step, so two
        invocations interleaved on the event loop cannot both pass.

        Returns:
            Remaining whole seconds (ceiling) when still cooling down,
            otherwise None after recording ``now + duration``.
        """
        if now is None:
            now = self.now()
        timestamps = self._expiries.setdefault(command, {})
        expires_at = timestamps.get(actor_id, 0.0)
        if now < expires_at:
            return math.ceil(expires_at - now)
        timestamps[actor_id] = now + duration
        return None

    def reset(self, command: str, actor_id: Optional[str] = None) -> None:
        """Forget one actor's cooldown on a command, or the whole command."""
        if actor_id is None:
            self._expiries.pop(command, None)
        else:
            self._expiries.get(command, {}).pop(actor_id, None)
        logger.debug("cooldown_reset", command=command, actor=actor_id)

    def clear(self) -> None:
        self._expiries.clear()

    def __contains__(self, command: str) -> bool:
        return command in self._expiries
