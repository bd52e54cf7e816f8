"""
Error taxonomy for the stone-analysis client.

Terminal errors stop an analysis immediately; transient errors are retried
by the retry engine within the same logical call.
"""

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Failure categories reported in response envelopes."""
    NO_API_KEY = "no_api_key"                    # terminal, no network
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"  # terminal, no network
    NETWORK_ERROR = "network_error"              # transient
    TIMEOUT = "timeout"                          # transient
    PARSE_ERROR = "parse_error"                  # terminal, no retry
    STORAGE_ERROR = "storage_error"              # local persistence

    @property
    def retriable(self) -> bool:
        return self in (ErrorCode.NETWORK_ERROR, ErrorCode.TIMEOUT)


class CrystalGuideError(Exception):
    """Base exception for all crystal_guide errors."""

    code: Optional[ErrorCode] = None

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StorageError(CrystalGuideError):
    """Raised when a key/value store write, remove or clear fails."""

    code = ErrorCode.STORAGE_ERROR

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class TransportError(CrystalGuideError):
    """Raised by a provider call that failed at the transport or HTTP level."""

    code = ErrorCode.NETWORK_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AnalysisParseError(CrystalGuideError):
    """Raised when a provider reply does not contain a usable analysis."""

    code = ErrorCode.PARSE_ERROR
