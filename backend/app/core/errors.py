"""Exceptions raised across ingestion, aggregation, and reconciliation."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for every ledger failure."""


class TransientSourceError(LedgerError):
    """The chain RPC timed out, throttled us, or returned a server error."""


class RangeTooLarge(TransientSourceError):
    """The RPC refused an ``eth_getLogs`` window; the caller must bisect it."""

    def __init__(self, from_block: int, to_block: int, message: str | None = None) -> None:
        self.from_block = from_block
        self.to_block = to_block
        super().__init__(message or f"Block range {from_block}-{to_block} rejected by RPC")


class MalformedEvent(LedgerError):
    """A log matched a tracked signature but its payload could not be decoded."""


class PersistenceConflict(LedgerError):
    """A write lost a race or hit a transient database error and may be retried."""


class InvariantViolation(LedgerError):
    def __init__(self, market_id: int, address: str, detail: str) -> None:
        self.market_id = market_id
        self.address = address
        self.detail = detail
        super().__init__(f"Invariant violated for market {market_id} / {address}: {detail}")


class NoPendingUpdate(LedgerError):
    """confirm/revert was called for a market with no optimistic update in flight."""


class PositionNotIndexed(LedgerError):
    """confirm found no ledger position yet; the optimistic update stays pending."""
