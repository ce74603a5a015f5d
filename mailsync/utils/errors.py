"""
Centralized error hierarchy for the sync engine.

Every error carries an ``ErrorKind`` and a ``retryable`` flag so the sync
executor can decide, at the account boundary, what to record on the account
without inspecting exception types one by one.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of failures recorded on an account."""
    AUTHENTICATION = "authentication"
    CONNECTION = "connection"
    PROTOCOL = "protocol"
    CONFIGURATION = "configuration"
    DATA = "data"
    UNEXPECTED = "unexpected"


class MailSyncError(Exception):
    """Base exception for all sync engine errors."""

    kind: ErrorKind = ErrorKind.UNEXPECTED
    retryable: bool = False

    def __init__(self, message: str = "", *, account_id: Optional[str] = None):
        super().__init__(message)
        self.account_id = account_id


class AuthenticationError(MailSyncError):
    """Credentials were rejected or an OAuth2 refresh token is revoked/invalid."""
    kind = ErrorKind.AUTHENTICATION


class TokenRefreshError(MailSyncError):
    """The token endpoint could not be reached; the next scheduled pass retries."""
    kind = ErrorKind.CONNECTION
    retryable = True


class MailConnectionError(MailSyncError):
    """Transport failure: timeout, DNS, TLS negotiation, dropped socket."""
    kind = ErrorKind.CONNECTION
    retryable = True


class ProtocolError(MailSyncError):
    """The server answered NO/BAD to a command after a successful login."""
    kind = ErrorKind.PROTOCOL
    retryable = True


class ConfigurationError(MailSyncError):
    """Missing client credentials, hosts or other settings. Not retryable until fixed."""
    kind = ErrorKind.CONFIGURATION


class MessageParseError(MailSyncError):
    """A single message could not be parsed. Never fails a pass."""
    kind = ErrorKind.DATA


class CursorInvalidError(MailSyncError):
    """A persisted incremental cursor can no longer be used."""
    kind = ErrorKind.DATA


class InvalidTransitionError(MailSyncError):
    """An account sync state transition outside the state machine was attempted."""


class DuplicateAccountError(MailSyncError):
    """An account for the same (user, email address) pair already exists."""
    kind = ErrorKind.CONFIGURATION


class AccountNotFoundError(MailSyncError):
    kind = ErrorKind.CONFIGURATION


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, MailSyncError):
        return exc.kind
    return ErrorKind.UNEXPECTED


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, MailSyncError):
        return exc.retryable
    # Unclassified failures are retried on the next tick like transport errors
    return True


def describe_for_user(exc: BaseException) -> str:
    """
    Convert an exception into the human-readable text stored in ``last_sync_error``.

    Args:
        exc: The exception that ended the pass.

    Returns:
        A short message suitable for display next to the account.
    """
    detail = str(exc).strip() or type(exc).__name__
    kind = classify(exc)

    if kind == ErrorKind.AUTHENTICATION:
        return f"Needs re-authentication: {detail}"
    if isinstance(exc, TokenRefreshError):
        return f"Could not reach the sign-in service, will retry on the next sync: {detail}"
    if kind == ErrorKind.CONNECTION:
        return f"Could not connect to the mail server, will retry on the next sync: {detail}"
    if kind == ErrorKind.PROTOCOL:
        return f"The mail server rejected a request, will retry on the next sync: {detail}"
    if kind == ErrorKind.CONFIGURATION:
        return f"Account configuration problem: {detail}"
    return f"Unexpected sync error: {detail}"
