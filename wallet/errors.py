"""
Wallet error taxonomy.

Every error carries a machine-readable ``code`` and a human message; the
orchestrator converts them to response messages at its boundary, so none of
these ever reach the page as an exception.
"""

from typing import Any, Dict, Optional


class WalletError(Exception):
    code = "WALLET_ERROR"
    default_message = "Wallet operation failed"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            data["details"] = self.details
        return data


class SurfaceUnavailable(WalletError):
    """The approval UI could not be shown. Fatal to the request, never retried."""

    code = "EXTENSION_POPUP_OPEN_FAILED"
    default_message = "Failed to open extension popup"


class UserRejected(WalletError):
    """Explicit human rejection. Reported as ``approved: false``."""

    code = "USER_REJECTED"
    default_message = "Rejected by user"


class DecisionTimeout(WalletError):
    code = "USER_RESPONSE_TIMEOUT"
    default_message = "timeout"


class ExecutorFailure(WalletError):
    """Executor reported failure; its message is passed through verbatim."""

    code = "EXECUTOR_FAILED"
    default_message = "Transaction submission failed"


class ExecutorTimeout(ExecutorFailure):
    code = "EXECUTOR_TIMEOUT"
    default_message = "Transaction submission timed out"


class MalformedPayload(ExecutorFailure):
    code = "MALFORMED_PAYLOAD"
    default_message = "Malformed proof payload"


class AlreadyInProgress(WalletError):
    code = "REQUEST_IN_PROGRESS"
    default_message = "A request of this kind is already in progress"


class InvalidTransition(WalletError):
    code = "INVALID_TRANSITION"
    default_message = "Invalid request state transition"


class InvalidRequest(WalletError):
    code = "INVALID_REQUEST"
    default_message = "Invalid request"


class CredentialNotFound(WalletError):
    code = "VC_NOT_FOUND"
    default_message = "VC not found"


class CredentialSaveFailed(WalletError):
    code = "VC_SAVE_FAILED"
    default_message = "Failed to save VC"


class WalletShuttingDown(WalletError):
    """The background stopped while the request was still waiting."""

    code = "WALLET_SHUTTING_DOWN"
    default_message = "Wallet shutting down"
