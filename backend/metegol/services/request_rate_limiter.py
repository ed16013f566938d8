"""
backend/metegol/services/request_rate_limiter.py

Purpose:
    Requests-per-minute gate in front of every upstream wire attempt.
    Retries take a slot like first attempts: the provider client calls
    ``acquire`` from its attempt hook, not once per logical fetch. One
    allowance per provider name; a change of RPM applies from the next
    request.

Dependencies:
    - asyncio
    - time
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field


@dataclass
class _Allowance:
    rpm: int
    tokens: float
    refilled_at: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def refill(self, now: float) -> None:
        # rpm tokens per 60 s, never more than one minute's worth banked.
        elapsed = max(0.0, now - self.refilled_at)
        self.tokens = min(float(self.rpm), self.tokens + elapsed * self.rpm / 60.0)
        self.refilled_at = now

    def seconds_until_token(self) -> float:
        return (1.0 - self.tokens) * 60.0 / self.rpm


class RequestRateLimiter:
    """Per-provider token allowance; ``acquire`` waits until a request may go out."""

    def __init__(self) -> None:
        self._allowances: dict[str, _Allowance] = {}

    def _allowance(self, provider: str, rpm: int) -> _Allowance:
        allowance = self._allowances.get(provider)
        if allowance is None:
            allowance = _Allowance(rpm=rpm, tokens=float(rpm), refilled_at=time.monotonic())
            self._allowances[provider] = allowance
        elif allowance.rpm != rpm:
            allowance.rpm = rpm
            allowance.tokens = min(allowance.tokens, float(rpm))
        return allowance

    async def acquire(self, provider: str, rpm: int | None) -> None:
        """Take one request slot for ``provider``; rpm <= 0 or None disables the gate."""
        if not rpm or int(rpm) <= 0:
            return
        name = (provider or "").strip().lower()
        if not name:
            return

        allowance = self._allowance(name, int(rpm))
        while True:
            async with allowance.lock:
                allowance.refill(time.monotonic())
                if allowance.tokens >= 1.0:
                    allowance.tokens -= 1.0
                    return
                wait = allowance.seconds_until_token()
            await asyncio.sleep(wait)

    def reset(self, provider: str | None = None) -> None:
        if provider is None:
            self._allowances.clear()
        else:
            self._allowances.pop(provider.strip().lower(), None)


request_rate_limiter = RequestRateLimiter()
