from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationFailed(LedgerError, ValueError):
    """Malformed or missing input; raised before anything is mutated."""

    status_code = 422


class NotFound(LedgerError):
    status_code = 404


class GuardViolation(LedgerError):
    """A lifecycle guard rejected the operation (e.g. paying a cancelled booking)."""

    status_code = 409


class ConcurrencyConflict(LedgerError):
    status_code = 409
    retryable = True


class IntegrityDefect(LedgerError):
    """
    Duplicate references, ledger drift and similar defects.

    Always logged at error level on construction; never retried automatically.
    """

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        logger.error("Ledger integrity defect: %s", detail)
