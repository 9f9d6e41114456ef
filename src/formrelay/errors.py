"""Storage failures raised by tier backends."""

from __future__ import annotations


class TierError(RuntimeError):
    """A storage tier operation failed."""

    def __init__(self, tier: str, op: str, message: str) -> None:
        super().__init__(f"{tier}.{op}: {message}")
        self.tier = tier
        self.op = op


class TableNotFoundError(TierError):
    """The table reference could not be opened."""
