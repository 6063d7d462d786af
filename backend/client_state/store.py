"""Keyed, serializable store of a wallet's share balances per market."""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass, replace
from typing import Any


@dataclass(slots=True)
class UserShares:
    market_id: int
    yes_shares: int = 0
    no_shares: int = 0
    total_investment: int = 0
    is_optimistic: bool = False

    def add(self, amount: int, side: bool) -> None:
        """Apply a purchase with the same rule the ledger aggregator uses."""

        if side:
            self.yes_shares += amount
        else:
            self.no_shares += amount
        self.total_investment += amount

    def copy(self) -> "UserShares":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "yes_shares": str(self.yes_shares),
            "no_shares": str(self.no_shares),
            "total_investment": str(self.total_investment),
            "is_optimistic": self.is_optimistic,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "UserShares":
        return cls(
            market_id=int(payload["market_id"]),
            yes_shares=int(payload.get("yes_shares") or 0),
            no_shares=int(payload.get("no_shares") or 0),
            total_investment=int(payload.get("total_investment") or 0),
            is_optimistic=bool(payload.get("is_optimistic", False)),
        )


class ParticipantSharesStore:
    """Plain ``market_id -> UserShares`` mapping with explicit (de)serialization."""

    def __init__(self, address: str | None = None) -> None:
        self.address = address.lower() if address else None
        self._shares: dict[int, UserShares] = {}

    def __contains__(self, market_id: int) -> bool:
        return market_id in self._shares

    def __iter__(self) -> Iterator[UserShares]:
        return iter(self._shares.values())

    def __len__(self) -> int:
        return len(self._shares)

    def get(self, market_id: int) -> UserShares | None:
        return self._shares.get(market_id)

    def set(self, shares: UserShares) -> None:
        self._shares[shares.market_id] = shares

    def remove(self, market_id: int) -> None:
        self._shares.pop(market_id, None)

    def clear(self) -> None:
        self._shares.clear()

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "shares": {str(market_id): shares.to_dict() for market_id, shares in self._shares.items()},
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ParticipantSharesStore":
        store = cls(payload.get("address"))
        for shares_payload in (payload.get("shares") or {}).values():
            shares = UserShares.from_dict(shares_payload)
            # Nothing in flight survives a reload; rehydrated balances are settled.
            shares.is_optimistic = False
            store.set(shares)
        return store

    def dumps(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def loads(cls, raw: str) -> "ParticipantSharesStore":
        return cls.from_dict(json.loads(raw))


__all__ = ["ParticipantSharesStore", "UserShares"]
