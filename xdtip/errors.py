"""
Error taxonomy shared by the ledger, the webhook reconciler and the HTTP
boundary.

Every error carries a machine-checkable ``kind`` and a human-readable
``message``. The HTTP layer renders them as::

    {"success": false, "error": {"kind": ..., "message": ...}}
"""
from __future__ import annotations


class TipError(Exception):
    kind = "TipError"
    status_code = 400

    def __init__(self, message: str, kind: str | None = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def as_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


# ---- 4xx, user-correctable
class ValidationError(TipError):
    kind = "ValidationError"
    status_code = 400


class InvalidAmount(ValidationError):
    kind = "InvalidAmount"


class InvalidMessage(ValidationError):
    kind = "InvalidMessage"


class MissingField(ValidationError):
    kind = "MissingField"


class SelfTip(ValidationError):
    kind = "SelfTip"


class NotFoundError(TipError):
    kind = "NotFoundError"
    status_code = 404


class SenderNotFound(NotFoundError):
    kind = "SenderNotFound"


class ReceiverNotFound(NotFoundError):
    kind = "ReceiverNotFound"


class AccountNotFound(NotFoundError):
    kind = "AccountNotFound"


class InsufficientFundsError(TipError):
    kind = "InsufficientFunds"
    status_code = 400


class ConflictError(TipError):
    kind = "Conflict"
    status_code = 409


class AuthError(TipError):
    kind = "AuthError"
    status_code = 401


class SignatureError(TipError):
    kind = "InvalidSignature"
    status_code = 400


# ---- webhook: recoverable, answered with 200 to the gateway
class MissingTarget(TipError):
    kind = "MissingTarget"
    status_code = 200


# ---- 5xx, retried by the caller, never by the engine
class StoreError(TipError):
    kind = "StoreError"
    status_code = 503


# never surfaced to a settlement caller
class NotificationError(TipError):
    kind = "NotificationError"
    status_code = 500
