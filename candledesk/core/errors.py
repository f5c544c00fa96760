"""
Error taxonomy for the sync and trading core.

Provider bindings translate their library's exceptions into the
``ProviderError`` family at their own boundary.  Everything above the
provider works with these classes, and ``AppError`` turns any exception
into a user-facing message plus the technical detail for the log.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorType(Enum):
    NETWORK = "network"
    API = "api"
    PARSE = "parse"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


# Api error bodies that identify a credentials problem.
_AUTH_MARKERS = ("INVALID_API_KEY", "INVALID_SIGNATURE")


# ---------------------------------------------------------------------------
# Provider exceptions
# ---------------------------------------------------------------------------

class ProviderError(Exception):
    error_type = ErrorType.UNKNOWN

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class NetworkError(ProviderError):
    error_type = ErrorType.NETWORK


class ApiError(ProviderError):
    error_type = ErrorType.API

    def __init__(self, message: str = "", status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"HTTP {self.status}: {self.message}"

    @property
    def is_auth_failure(self) -> bool:
        if self.status in (401, 403):
            return True
        return any(marker in self.message for marker in _AUTH_MARKERS)


class ParseError(ProviderError):
    error_type = ErrorType.PARSE


class ValidationError(ProviderError):
    error_type = ErrorType.VALIDATION


class InvalidSeriesIdError(ValidationError):
    pass


class ConfigurationError(ProviderError):
    error_type = ErrorType.CONFIGURATION


# ---------------------------------------------------------------------------
# AppError
# ---------------------------------------------------------------------------

@dataclass
class AppError:
    """A classified error with a message fit for a notification."""
    user_message: str
    technical_message: str
    error_type: ErrorType
    source: Optional[str] = None
    status: Optional[int] = None
    auth_failure: bool = False

    @classmethod
    def from_exception(cls, exc: BaseException, context: str) -> "AppError":
        """
        Classify *exc*, raised while doing *context*.

        Parameters
        ----------
        exc : BaseException
            Usually a ``ProviderError``; anything else is ``UNKNOWN``.
        context : str
            Short description of the failed operation, e.g.
            ``"fetch BTCUSDT_1h"``.  Used as the error source.
        """
        technical = f"{context}: {exc}"
        if not isinstance(exc, ProviderError):
            return cls(
                user_message=f"Unexpected error during {context}.",
                technical_message=f"{technical} ({type(exc).__name__})",
                error_type=ErrorType.UNKNOWN,
                source=context,
            )

        error_type = exc.error_type
        status = getattr(exc, "status", None)
        auth_failure = isinstance(exc, ApiError) and exc.is_auth_failure

        if error_type is ErrorType.NETWORK:
            user = "Connection problem. Check your internet connection."
        elif error_type is ErrorType.API and status == 429:
            user = "Too many requests. Please wait a moment."
        elif auth_failure:
            user = "Authentication failed. Check your API credentials."
        elif error_type is ErrorType.API:
            user = f"The market data service returned an error during {context}."
        elif error_type is ErrorType.PARSE:
            user = "Received data could not be read."
        elif error_type is ErrorType.VALIDATION:
            user = f"Invalid request: {exc.message}"
        elif error_type is ErrorType.CONFIGURATION:
            user = f"Configuration problem: {exc.message}"
        else:
            user = f"Unexpected error during {context}."

        return cls(
            user_message=user,
            technical_message=technical,
            error_type=error_type,
            source=context,
            status=status,
            auth_failure=auth_failure,
        )

    @property
    def is_retryable(self) -> bool:
        if self.error_type in (ErrorType.VALIDATION, ErrorType.CONFIGURATION):
            return False
        if self.error_type is ErrorType.API and self.auth_failure:
            return False
        return True

    @property
    def log_level(self) -> int:
        if self.error_type in (ErrorType.VALIDATION, ErrorType.PARSE):
            return logging.WARNING
        return logging.ERROR

    def log(self, logger: Optional[logging.Logger] = None) -> None:
        logger = logger or logging.getLogger(__name__)
        logger.log(
            self.log_level,
            f"[{self.error_type.value}] {self.technical_message}",
        )

    def __str__(self) -> str:
        return self.user_message
