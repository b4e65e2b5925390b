from enum import StrEnum

import httpx


class Disposition(StrEnum):
    RETRYABLE = "retryable"
    SKIPPABLE = "skippable"
    FATAL = "fatal"


# ---- Canonical error classes ------------------------------------------------

class BulkMintError(Exception):
    code: str = "unknown"
    disposition: Disposition = Disposition.FATAL

    def __init__(self, message: str = "", *, key: str | None = None):
        super().__init__(message)
        self.key = key


class TransientNetworkError(BulkMintError):
    code, disposition = "network", Disposition.RETRYABLE


class SubmissionRejected(BulkMintError):
    code, disposition = "rejected", Disposition.RETRYABLE


class SubmissionTimedOut(BulkMintError):
    """The checkpoint expired before the network reported the batch durable."""

    code, disposition = "timed_out", Disposition.RETRYABLE


class StateDecodeError(BulkMintError):
    code, disposition = "decode", Disposition.SKIPPABLE


class AccountNotFound(BulkMintError):
    code, disposition = "account_not_found", Disposition.SKIPPABLE


class NotUpdatable(BulkMintError):
    """Record is immutable or owned by another update authority."""

    code, disposition = "not_updatable", Disposition.SKIPPABLE


class ConfigurationError(BulkMintError):
    code, disposition = "configuration", Disposition.FATAL


class ChunkCeilingError(ConfigurationError):
    code = "chunk_ceiling"


class MissingSignerError(ConfigurationError):
    code = "missing_signer"


class PlanningError(BulkMintError):
    """A required read failed while planning; surfaces to the outer retry loop."""

    code, disposition = "planning", Disposition.RETRYABLE


# ---- Helpers ---------------------------------------------------------------

def classify_exception(exc: BaseException) -> tuple[str, Disposition]:
    """
    Return (code, disposition) for any exception.
    BulkMintError subclasses carry their own metadata; transport failures
    from httpx are retryable; everything else is fatal.
    """
    if isinstance(exc, BulkMintError):
        return exc.code, exc.disposition
    if isinstance(exc, (httpx.TransportError, httpx.HTTPStatusError)):
        return "network", Disposition.RETRYABLE
    if isinstance(exc, TimeoutError):
        return "timeout", Disposition.RETRYABLE
    return "unexpected", Disposition.FATAL
