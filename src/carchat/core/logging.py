"""
Structured logging configuration with session correlation.

Session lifecycle events carry the session id, the backend serving the
session and the surface it runs on, so a turn can be traced across the
recognizer, model backend and synthesizer.
"""

import logging
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog
from structlog.stdlib import LoggerFactory

# Context variables for session correlation
session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
backend_var: ContextVar[Optional[str]] = ContextVar("backend", default=None)
surface_var: ContextVar[Optional[str]] = ContextVar("surface", default=None)


class StructuredLogger:
    """Structured logger with session correlation support."""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)
        self.name = name

    def _get_context(self) -> Dict[str, Any]:
        """Get current session context for logging."""
        context = {}

        if session_id := session_id_var.get():
            context["session_id"] = session_id
        if backend := backend_var.get():
            context["backend"] = backend
        if surface := surface_var.get():
            context["surface"] = surface

        return context

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message with context."""
        self.logger.debug(message, **self._get_context(), **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log info message with context."""
        self.logger.info(message, **self._get_context(), **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log warning message with context."""
        self.logger.warning(message, **self._get_context(), **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log error message with context."""
        self.logger.error(message, **self._get_context(), **kwargs)

    def log_processing_step(
        self,
        step: str,
        component: str,
        duration_ms: Optional[float] = None,
        **kwargs: Any,
    ) -> None:
        """Log a processing step with timing information."""
        log_data = {
            "step": step,
            "component": component,
            **self._get_context(),
            **kwargs,
        }

        if duration_ms is not None:
            log_data["duration_ms"] = duration_ms

        self.logger.info(f"Processing step: {step}", **log_data)

    def log_state_change(self, previous: str, current: str, **kwargs: Any) -> None:
        """Log a session state transition."""
        self.logger.debug(
            "state_changed",
            previous=previous,
            current=current,
            **self._get_context(),
            **kwargs,
        )

    def log_fallback(
        self, requested: str, effective: str, reason: str, **kwargs: Any
    ) -> None:
        """Log a provider fallback decision."""
        self.logger.warning(
            "provider_fallback",
            requested=requested,
            effective=effective,
            reason=reason,
            **self._get_context(),
            **kwargs,
        )


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)


def set_session_context(
    session_id: Optional[str] = None,
    backend: Optional[str] = None,
    surface: Optional[str] = None,
) -> None:
    """Set session context for correlation."""
    if session_id:
        session_id_var.set(session_id)
    if backend:
        backend_var.set(backend)
    if surface:
        surface_var.set(surface)


def clear_session_context() -> None:
    """Clear session context."""
    session_id_var.set(None)
    backend_var.set(None)
    surface_var.set(None)


def generate_session_id() -> str:
    """Generate a unique session ID."""
    return str(uuid.uuid4())


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure structured logging for the application."""

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.add_log_level,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        handlers=[logging.StreamHandler()],
    )


class ProcessingTimer:
    """Context manager for timing pipeline stages."""

    def __init__(
        self, logger: StructuredLogger, step: str, component: str, **kwargs: Any
    ):
        self.logger = logger
        self.step = step
        self.component = component
        self.kwargs = kwargs
        self.start_time: Optional[float] = None
        self.duration_ms: Optional[float] = None

    def __enter__(self) -> "ProcessingTimer":
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self.start_time is not None:
            self.duration_ms = (time.monotonic() - self.start_time) * 1000
            status = "success" if exc_type is None else "error"

            self.logger.log_processing_step(
                self.step,
                self.component,
                duration_ms=self.duration_ms,
                status=status,
                **self.kwargs,
            )
