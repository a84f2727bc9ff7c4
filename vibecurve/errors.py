# vibecurve/errors.py
from typing import List, Optional
from .models import ErrorCode


class VibeCurveError(Exception):
    """Base class for all errors raised inside the bot."""


class ConfigError(VibeCurveError):
    pass


class StrategyNotFound(VibeCurveError):
    def __init__(self, strategy_id: str):
        super().__init__(f"Strategy not found: {strategy_id}")
        self.strategy_id = strategy_id


class InvalidTransition(VibeCurveError):
    pass


class PriceUnavailable(VibeCurveError):
    """A venue could not produce a price. Callers drop the venue and carry on."""

    def __init__(self, venue: str, reason: str):
        super().__init__(f"{venue}: {reason}")
        self.venue = venue
        self.reason = reason


class ExecutionError(VibeCurveError):
    """
    Raised inside the order pipeline only. The pipeline converts every one of
    these into a failed OrderResult before returning.
    """
    code = ErrorCode.UNKNOWN
    funds_at_risk = False


class QuoteFailed(ExecutionError):
    code = ErrorCode.QUOTE_FAILED


class TransactionBuildFailed(ExecutionError):
    code = ErrorCode.TRANSACTION_BUILD_FAILED


class SubmissionFailed(ExecutionError):
    code = ErrorCode.SUBMISSION_FAILED
    funds_at_risk = True


class BundleTimeout(ExecutionError):
    code = ErrorCode.BUNDLE_TIMEOUT
    funds_at_risk = True


class BundleRejected(ExecutionError):
    code = ErrorCode.BUNDLE_REJECTED
    funds_at_risk = True

    def __init__(self, relay_id: str, errors: Optional[List[str]] = None):
        self.relay_id = relay_id
        self.errors = errors or []
        detail = "; ".join(self.errors) if self.errors else "rejected by relay"
        super().__init__(f"Bundle {relay_id} rejected: {detail}")
