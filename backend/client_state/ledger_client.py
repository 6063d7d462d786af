from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from app.core.config import settings

from .store import UserShares


class LedgerApiClient:
    """Thin wrapper around the ledger read API used to confirm optimistic state."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or str(settings.ledger_api_base_url)
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def _get(self, path: str) -> dict[str, Any]:
        logger.debug("Ledger GET {}", path)
        response = self.client.get(path)
        response.raise_for_status()
        return response.json()

    def get_positions(self, address: str) -> list[dict[str, Any]]:
        payload = self._get(f"/users/{address.lower()}/positions")
        return list(payload.get("items") or [])

    def get_position(self, market_id: int, address: str) -> UserShares | None:
        for item in self.get_positions(address):
            if int(item.get("market_id", -1)) == market_id:
                return UserShares(
                    market_id=market_id,
                    yes_shares=int(item.get("yes_shares") or 0),
                    no_shares=int(item.get("no_shares") or 0),
                    total_investment=int(item.get("total_investment") or 0),
                )
        return None

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "LedgerApiClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
