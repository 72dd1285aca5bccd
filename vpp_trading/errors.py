"""Exception hierarchy for the trading core.

Risk rejections are NOT exceptions: they come back as a failed ExecutionResult.
"""

from __future__ import annotations


class VppTradingError(Exception):
    """Base class for all trading-core errors."""


class ValidationError(VppTradingError):
    """Bad request parameters. Raised before any state is mutated."""


class TransientExecutionError(VppTradingError):
    """Market connector timeout / transport failure for a single order."""


class SettlementConsistencyError(VppTradingError):
    """A second COMPLETED settlement for the same (vpp_id, period) was attempted."""


class PersistenceError(VppTradingError):
    """Store unavailable or a write failed. Fatal for the top-level call."""
