"""
Error taxonomy for the proof pipeline.

Every error carries its kind and whether it is transient. The flag is fixed
where the error is raised; the retry layer only ever reads it.
"""

from enum import Enum
from typing import Any, Dict, Optional

__all__ = [
    "ErrorKind",
    "MintStage",
    "ProofSnapError",
    "ValidationError",
    "AuthenticationError",
    "NetworkError",
    "LedgerError",
    "AlreadyRegisteredError",
    "RegistrationInProgressError",
    "InsufficientFundsError",
    "ProofNotFoundError",
    "StorageError",
    "MintError",
]


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    LEDGER = "ledger"
    STORAGE = "storage"


class MintStage(str, Enum):
    """Stage of the mint flow at which a failure happened."""
    HASH = "hash"
    SIGN = "sign"
    STORE = "store"
    ANCHOR = "anchor"
    INDEX = "index"


class ProofSnapError(Exception):
    """Base exception for all pipeline errors."""

    kind: ErrorKind = ErrorKind.STORAGE
    code: str = "PROOFSNAP_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        transient: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.transient = transient
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.transient,
            "details": self.details,
        }


class ValidationError(ProofSnapError):
    kind = ErrorKind.VALIDATION
    code = "VALIDATION_ERROR"
    status_code = 400


class AuthenticationError(ProofSnapError):
    kind = ErrorKind.AUTHENTICATION
    code = "AUTHENTICATION_ERROR"
    status_code = 401


class NetworkError(ProofSnapError):
    """Connectivity failure towards the content store or the ledger."""

    kind = ErrorKind.NETWORK
    code = "NETWORK_ERROR"
    status_code = 502

    def __init__(self, message: str, status_code: Optional[int] = None,
                 transient: bool = True, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=status_code, transient=transient, details=details)


class LedgerError(ProofSnapError):
    """The ledger refused the operation for a domain reason."""

    kind = ErrorKind.LEDGER
    code = "LEDGER_ERROR"
    status_code = 500


class AlreadyRegisteredError(LedgerError):
    code = "ALREADY_REGISTERED"
    status_code = 409


class RegistrationInProgressError(LedgerError):
    code = "REGISTRATION_IN_PROGRESS"
    status_code = 409


class InsufficientFundsError(LedgerError):
    code = "INSUFFICIENT_FUNDS"
    status_code = 402


class ProofNotFoundError(LedgerError):
    code = "PROOF_NOT_FOUND"
    status_code = 404


class StorageError(ProofSnapError):
    """Content store or index rejected or failed terminally."""

    kind = ErrorKind.STORAGE
    code = "STORAGE_ERROR"
    status_code = 500


class MintError(ProofSnapError):
    """A mint failure tagged with the stage it happened in.

    Kind, status and transient flag are taken from the underlying error so
    callers still see the specific failure.
    """

    code = "MINT_FAILED"

    def __init__(self, stage: MintStage, cause: ProofSnapError):
        super().__init__(
            f"Mint failed at {stage.value} stage: {cause.message}",
            status_code=cause.status_code,
            transient=cause.transient,
            details=dict(cause.details),
        )
        self.stage = stage
        self.cause = cause
        self.kind = cause.kind
        self.code = cause.code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["stage"] = self.stage.value
        return data
