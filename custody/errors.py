"""Exception hierarchy for the custodial transaction engine.

Every error carries an HTTP status so the API layer can translate it without
a lookup table. Messages must never contain secret material.
"""

from __future__ import annotations

from typing import Optional


class CustodyError(Exception):
    """Base class for all failures raised by the engine."""

    status_code = 500
    code = "custody_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)

    @property
    def message(self) -> str:
        return str(self)


class ConfigurationError(CustodyError):
    """Missing or malformed keys or credentials. Fatal at startup."""

    code = "configuration_error"


class EncryptionFailure(CustodyError):
    code = "encryption_failed"


class DecryptionFailure(CustodyError):
    code = "decryption_failed"


class WalletGenerationError(CustodyError):
    code = "wallet_generation_failed"


class WalletNotFound(CustodyError):
    status_code = 404
    code = "wallet_not_found"


class InsufficientFunds(CustodyError):
    status_code = 400
    code = "insufficient_funds"


class InvalidRecipient(CustodyError):
    status_code = 400
    code = "invalid_recipient"


class InvalidAmount(CustodyError):
    status_code = 400
    code = "invalid_amount"


class UnsupportedCurrency(CustodyError):
    status_code = 400
    code = "unsupported_currency"


class LimitExceeded(CustodyError):
    status_code = 403
    code = "limit_exceeded"


class ConfirmationRequired(CustodyError):
    status_code = 400
    code = "confirmation_required"


class TransactionNotFound(CustodyError):
    status_code = 404
    code = "transaction_not_found"


class TokenExpired(CustodyError):
    status_code = 410
    code = "token_expired"


class TokenAlreadyConsumed(CustodyError):
    """The confirmation token was already used; carries the record's current state."""

    status_code = 409
    code = "token_already_consumed"

    def __init__(self, status: str, tx_hash: Optional[str] = None) -> None:
        super().__init__(f"transaction already {status}")
        self.status = status
        self.tx_hash = tx_hash


class NonceConflict(CustodyError):
    """Two allocations observed the same nonce; indicates broken store isolation."""

    code = "nonce_conflict"


class NetworkUnavailable(CustodyError):
    status_code = 503
    code = "network_unavailable"


class BroadcastRejected(CustodyError):
    status_code = 502
    code = "broadcast_rejected"

    def __init__(self, reason: str) -> None:
        super().__init__(f"broadcast rejected: {reason}")
        self.reason = reason


class SigningFailure(CustodyError):
    code = "signing_failed"


class TransferFailed(CustodyError):
    """Execution failed and the transaction was terminalized as ``failed``."""

    status_code = 502
    code = "transfer_failed"

    def __init__(self, transaction_id: str, cause: str) -> None:
        super().__init__(cause)
        self.transaction_id = transaction_id
        self.cause = cause
