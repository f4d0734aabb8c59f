from __future__ import annotations

import asyncio
import enum
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from wxconsensus.errors import StorageError
from wxconsensus.observability.metrics import LEADER_STATE
from wxconsensus.storage.base import AccuracyStore

logger = structlog.get_logger(__name__)

DEFAULT_LEASE_ID = "accuracy-runner-lease"


class LeaderState(str, enum.Enum):
    NOT_LEADER = "not_leader"
    LEADER = "leader"


@dataclass(frozen=True)
class LeaseToken:
    """Proof of leadership handed to leader-only operations."""

    lease_id: str
    holder_id: str
    acquired_at_ms: int


class LeaseManager:
    """
    Leader election over a single lease row.

    Acquisition and renewal are conditional writes in the store, so two replicas
    racing for an expired lease cannot both win.
    """

    def __init__(
        self,
        store: AccuracyStore,
        lease_id: str = DEFAULT_LEASE_ID,
        holder_id: Optional[str] = None,
        duration_s: float = 90,
        renew_interval_s: float = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if renew_interval_s >= duration_s:
            raise ValueError("renew_interval_s must be shorter than duration_s")
        self.store = store
        self.lease_id = lease_id
        self.holder_id = holder_id or uuid.uuid4().hex
        self.duration_s = duration_s
        self.renew_interval_s = renew_interval_s
        self._clock = clock
        self._state = LeaderState.NOT_LEADER
        self._renewal: Optional[asyncio.Task] = None
        self._token: Optional[LeaseToken] = None

    @property
    def state(self) -> LeaderState:
        return self._state

    @property
    def token(self) -> Optional[LeaseToken]:
        """Token from the last successful acquire, while still believed held."""
        return self._token if self.is_leader else None

    @property
    def is_leader(self) -> bool:
        return self._state is LeaderState.LEADER

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _set_state(self, state: LeaderState) -> None:
        if state is not self._state:
            logger.info("lease.state_changed", lease_id=self.lease_id, holder_id=self.holder_id, state=state.value)
        self._state = state
        LEADER_STATE.set(1 if state is LeaderState.LEADER else 0)

    def acquire(self) -> Optional[LeaseToken]:
        now_ms = self._now_ms()
        won = self.store.try_acquire_lease(
            self.lease_id, self.holder_id, now_ms, int(self.duration_s * 1000)
        )
        if not won:
            self._set_state(LeaderState.NOT_LEADER)
            current = self.store.get_lease(self.lease_id)
            logger.info(
                "lease.held_elsewhere",
                lease_id=self.lease_id,
                holder_id=current.holder_id if current else None,
            )
            return None
        self._set_state(LeaderState.LEADER)
        self._token = LeaseToken(self.lease_id, self.holder_id, now_ms)
        return self._token

    def renew(self, token: LeaseToken) -> bool:
        if token.holder_id != self.holder_id or token.lease_id != self.lease_id:
            return False
        kept = self.store.renew_lease(self.lease_id, self.holder_id, self._now_ms())
        if not kept:
            logger.warning("lease.lost", lease_id=self.lease_id, holder_id=self.holder_id)
            self._set_state(LeaderState.NOT_LEADER)
        return kept

    def release(self, token: LeaseToken) -> bool:
        self.stop_renewal()
        released = self.store.release_lease(token.lease_id, token.holder_id)
        self._set_state(LeaderState.NOT_LEADER)
        if released:
            logger.info("lease.released", lease_id=token.lease_id, holder_id=token.holder_id)
        return released

    def current_holder(self) -> Optional[str]:
        lease = self.store.get_lease(self.lease_id)
        return lease.holder_id if lease else None

    # --- background renewal ---
    @property
    def renewal_running(self) -> bool:
        return self._renewal is not None and not self._renewal.done()

    def start_renewal(self, token: LeaseToken) -> asyncio.Task:
        """Renew every renew_interval_s until the lease is lost or stop_renewal() is called."""
        if self.renewal_running:
            assert self._renewal is not None
            return self._renewal
        self._renewal = asyncio.create_task(self._renew_loop(token), name=f"lease-renewal:{self.lease_id}")
        return self._renewal

    async def _renew_loop(self, token: LeaseToken) -> None:
        while True:
            await asyncio.sleep(self.renew_interval_s)
            try:
                kept = self.renew(token)
            except StorageError:
                logger.exception("lease.renew_failed", lease_id=self.lease_id)
                continue
            if not kept:
                return

    def stop_renewal(self) -> None:
        task, self._renewal = self._renewal, None
        if task is not None and not task.done():
            task.cancel()
