"""
Exception hierarchy for the CarChat voice core.

Every failure a model backend, the realtime transport or provider resolution
can raise is expressed as one of these types so that sessions can surface a
single human-readable message.
"""

import asyncio
import re
from typing import Any, Dict, Optional

import anthropic
import httpx
import openai


class CarChatError(Exception):
    """Base exception for all CarChat errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        component: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.component = component

    def __str__(self) -> str:
        """String representation of the error."""
        base_msg = f"[{self.component or 'CarChat'}] {self.message}"
        if self.error_code:
            base_msg = f"[{self.error_code}] {base_msg}"
        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "component": self.component,
            "details": self.details,
        }


class InvalidCredentialError(CarChatError):
    """Raised when a credential is missing, empty or rejected upstream."""

    def __init__(self, message: str = "Invalid API key", **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "INVALID_CREDENTIAL")
        super().__init__(message, **kwargs)


class NetworkError(CarChatError):
    """Raised when a transport-level failure prevents reaching a backend."""

    def __init__(self, detail: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "NETWORK_ERROR")
        kwargs.setdefault("details", {"detail": detail})
        super().__init__(f"Network error: {detail}", **kwargs)
        self.detail = detail


class RateLimitedError(CarChatError):
    """Raised when a backend throttles the caller."""

    def __init__(
        self, message: str = "Rate limited. Please wait a moment.", **kwargs: Any
    ) -> None:
        kwargs.setdefault("error_code", "RATE_LIMITED")
        super().__init__(message, **kwargs)


class BackendUnavailableError(CarChatError):
    """Raised when the requested model or backend cannot serve the request."""

    def __init__(self, name: str, hint: Optional[str] = None, **kwargs: Any) -> None:
        message = f"Model '{name}' is unavailable"
        if hint:
            message = f"{message}. {hint}"
        kwargs.setdefault("error_code", "BACKEND_UNAVAILABLE")
        kwargs.setdefault("details", {"name": name})
        super().__init__(message, **kwargs)
        self.name = name


class ConfigurationMissingError(CarChatError):
    """Raised when no usable configuration exists for a backend or request."""

    def __init__(self, detail: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "CONFIGURATION_MISSING")
        kwargs.setdefault("details", {"detail": detail})
        super().__init__(detail, **kwargs)
        self.detail = detail


class UnknownProviderError(CarChatError):
    """Raised for upstream failures that match no other category."""

    def __init__(self, detail: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "UNKNOWN")
        kwargs.setdefault("details", {"detail": detail})
        super().__init__(detail, **kwargs)
        self.detail = detail


class AudioSessionError(CarChatError):
    """Raised when the audio hardware refuses a category or activation change."""

    pass


class AudioDeviceError(CarChatError):
    """Raised when a microphone, recognizer or player cannot be used."""

    def __init__(self, detail: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "AUDIO_DEVICE")
        kwargs.setdefault("details", {"detail": detail})
        super().__init__(f"Audio error: {detail}", **kwargs)
        self.detail = detail


def audio_error(exc: BaseException, component: Optional[str] = None) -> CarChatError:
    """Wrap a local audio failure; CarChat errors pass through untouched."""
    if isinstance(exc, CarChatError):
        return exc
    return AudioDeviceError(str(exc) or exc.__class__.__name__, component=component)


# Upstream error translation

_CREDENTIAL_MARKERS = (
    "401",
    "unauthorized",
    "invalid api key",
    "invalid_api_key",
    "authentication",
    "403",
    "forbidden",
    "permission",
)
_RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")
_UNAVAILABLE_MARKERS = ("404", "not found")
_STATUS_PATTERN = re.compile(r"\b(4\d\d|5\d\d)\b")


def error_for_status(
    status_code: int,
    body: str = "",
    component: Optional[str] = None,
    name: str = "model",
) -> CarChatError:
    """Map an HTTP status code to the error taxonomy."""
    if status_code in (401, 403):
        return InvalidCredentialError(component=component)
    if status_code == 429:
        return RateLimitedError(component=component)
    if status_code == 404:
        return BackendUnavailableError(name, component=component)
    detail = f"HTTP {status_code}"
    if body:
        detail = f"{detail}: {body[:200]}"
    return UnknownProviderError(detail, component=component)


def translate_error(exc: BaseException, component: Optional[str] = None) -> CarChatError:
    """Translate an upstream exception into a CarChatError.

    Already-translated errors pass through untouched. HTTP status errors are
    mapped by code; transport failures and timeouts become NetworkError; SDK
    errors are classified by the status code or keywords in their message.
    """
    if isinstance(exc, CarChatError):
        return exc

    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response.status_code, component=component)

    if isinstance(
        exc,
        (
            httpx.TransportError,
            openai.APIConnectionError,
            anthropic.APIConnectionError,
            asyncio.TimeoutError,
            ConnectionError,
        ),
    ):
        return NetworkError(str(exc) or exc.__class__.__name__, component=component)

    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return error_for_status(status_code, component=component)

    text = str(exc).lower()
    if any(marker in text for marker in _CREDENTIAL_MARKERS):
        return InvalidCredentialError(component=component)
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return RateLimitedError(component=component)
    if any(marker in text for marker in _UNAVAILABLE_MARKERS):
        return BackendUnavailableError("model", component=component)

    match = _STATUS_PATTERN.search(text)
    if match:
        return error_for_status(int(match.group(1)), component=component)

    return UnknownProviderError(str(exc) or exc.__class__.__name__, component=component)

