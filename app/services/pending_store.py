"""Short-lived registry of STK push requests waiting for their Daraja callback.

Entries are keyed by CheckoutRequestID and hold what the callback needs to finish the
job: which realtime session to notify and either the draft of a new account or the id of
an existing user. Every entry evicts itself after a fixed TTL so abandoned payments do
not pile up in memory.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass

log = logging.getLogger("uvicorn.error")

PENDING_ACTIVATION_TTL_SECONDS = 5 * 60


class ActivationMode(str, enum.Enum):
    new_account = "new_account"
    existing_account = "existing_account"


@dataclass(frozen=True)
class AccountDraft:
    name: str
    email: str
    password: str  # plain; hashed when the user row is created
    phone: str | None = None


@dataclass(frozen=True)
class PendingActivation:
    request_id: str
    session_id: str
    mode: ActivationMode
    account_draft: AccountDraft | None = None
    user_id: int | None = None

    @property
    def is_new_account(self) -> bool:
        return self.mode == ActivationMode.new_account


class PendingActivationStore:
    """put/take/delete keyed by request id, with TTL eviction.

    A shared backend (e.g. a table with an expiry column) can replace the in-memory one
    without changing the activation workflow.
    """

    async def put(self, key: str, value: PendingActivation) -> None:
        raise NotImplementedError

    async def take(self, key: str) -> PendingActivation | None:
        """Return and remove the entry. A second take on the same key returns None."""
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def get(self, key: str) -> PendingActivation | None:
        raise NotImplementedError


class InMemoryPendingStore(PendingActivationStore):
    """Process-local store. take() never awaits, so it is atomic on the event loop."""

    def __init__(self, ttl_seconds: float = PENDING_ACTIVATION_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, PendingActivation] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    async def put(self, key: str, value: PendingActivation) -> None:
        self._cancel_timer(key)
        self._entries[key] = value
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.ttl_seconds, self._evict, key)

    async def take(self, key: str) -> PendingActivation | None:
        self._cancel_timer(key)
        return self._entries.pop(key, None)

    async def delete(self, key: str) -> None:
        self._cancel_timer(key)
        self._entries.pop(key, None)

    async def get(self, key: str) -> PendingActivation | None:
        return self._entries.get(key)

    def _cancel_timer(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _evict(self, key: str) -> None:
        self._timers.pop(key, None)
        if self._entries.pop(key, None) is not None:
            log.info("[STK Cleanup] No callback within %ss, dropped pending activation %s", self.ttl_seconds, key)
