# synonym_client/errors.py
from enum import Enum


class FailureKind(str, Enum):
    NETWORK = "NETWORK"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    PROCESS_ERROR = "PROCESS_ERROR"


class SynonymClientError(Exception):
    """Base class for every error raised by the client."""


class ProcessFailure(SynonymClientError):
    """A call to the remote game process did not produce a usable result."""

    def __init__(self, kind: FailureKind, message: str):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message


class GuardViolation(SynonymClientError):
    """An intent was rejected locally before anything was sent to the process."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
