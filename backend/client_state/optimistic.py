"""Speculative share balances that are later confirmed or rolled back.

A purchase updates the local view immediately (``apply_optimistic``). Once
the ledger has indexed the transaction, ``confirm`` adopts what it reports; if the
transaction fails, ``revert`` restores the exact balances captured before the first
pending update.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from loguru import logger

from app.core.errors import NoPendingUpdate, PositionNotIndexed

from .store import ParticipantSharesStore, UserShares


class UpdatePhase(str, Enum):
    IDLE = "idle"
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"


class LedgerReader(Protocol):
    def get_position(self, market_id: int, address: str) -> UserShares | None: ...


@dataclass(slots=True)
class PendingUpdate:
    snapshot: UserShares | None
    updates: int = 0


@dataclass(slots=True)
class OptimisticState:
    market_id: int
    phase: UpdatePhase
    shares: UserShares | None
    pending_updates: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "phase": self.phase.value,
            "shares": self.shares.to_dict() if self.shares else None,
            "pending_updates": self.pending_updates,
        }


class OptimisticUpdateLayer:
    """Per-market Idle -> Optimistic -> Confirmed / (revert ->) Idle machine.

    Single-threaded by contract: drive it from one UI/event loop.
    """

    def __init__(
        self,
        address: str,
        reader: LedgerReader,
        store: ParticipantSharesStore | None = None,
    ) -> None:
        self.address = address.lower()
        self._reader = reader
        self.store = store or ParticipantSharesStore(self.address)
        self._pending: dict[int, PendingUpdate] = {}
        self._phases: dict[int, UpdatePhase] = {}

    def apply_optimistic(self, market_id: int, amount: int, side: bool) -> UserShares:
        if isinstance(amount, bool) or int(amount) <= 0:
            raise ValueError("Optimistic purchase amount must be a positive integer")

        current = self.store.get(market_id)
        pending = self._pending.get(market_id)
        if pending is None:
            pending = PendingUpdate(snapshot=current.copy() if current is not None else None)
            self._pending[market_id] = pending

        updated = current.copy() if current is not None else UserShares(market_id=market_id)
        updated.add(int(amount), bool(side))
        updated.is_optimistic = True
        self.store.set(updated)
        pending.updates += 1
        self._phases[market_id] = UpdatePhase.OPTIMISTIC
        return updated.copy()

    def confirm(self, market_id: int) -> UserShares:
        pending = self._require_pending(market_id)
        authoritative = self._reader.get_position(market_id, self.address)
        if authoritative is None:
            logger.debug("Ledger has no position for market {} yet; update stays pending", market_id)
            raise PositionNotIndexed(
                f"Ledger has no position for {self.address} in market {market_id}; retry confirm later"
            )
        confirmed = authoritative.copy()
        confirmed.is_optimistic = False
        self.store.set(confirmed)
        del self._pending[market_id]
        self._phases[market_id] = UpdatePhase.CONFIRMED
        logger.debug("Confirmed {} optimistic update(s) for market {}", pending.updates, market_id)
        return confirmed.copy()

    def revert(self, market_id: int) -> UserShares | None:
        pending = self._require_pending(market_id)
        if pending.snapshot is None:
            self.store.remove(market_id)
        else:
            self.store.set(pending.snapshot.copy())
        del self._pending[market_id]
        self._phases[market_id] = UpdatePhase.IDLE
        return pending.snapshot.copy() if pending.snapshot is not None else None

    def get_state(self, market_id: int) -> OptimisticState:
        shares = self.store.get(market_id)
        pending = self._pending.get(market_id)
        return OptimisticState(
            market_id=market_id,
            phase=self._phases.get(market_id, UpdatePhase.IDLE),
            shares=shares.copy() if shares is not None else None,
            pending_updates=pending.updates if pending else 0,
        )

    def is_pending(self, market_id: int) -> bool:
        return market_id in self._pending

    def settled_store(self) -> ParticipantSharesStore:
        """Copy of the store with pending markets rolled back to their snapshots."""

        settled = ParticipantSharesStore(self.address)
        for shares in self.store:
            pending = self._pending.get(shares.market_id)
            if pending is None:
                settled.set(shares.copy())
            elif pending.snapshot is not None:
                settled.set(pending.snapshot.copy())
        return settled

    def _require_pending(self, market_id: int) -> PendingUpdate:
        pending = self._pending.get(market_id)
        if pending is None:
            raise NoPendingUpdate(f"No optimistic update pending for market {market_id}")
        return pending


__all__ = [
    "LedgerReader",
    "OptimisticState",
    "OptimisticUpdateLayer",
    "PendingUpdate",
    "UpdatePhase",
]
