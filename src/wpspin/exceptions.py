"""
wp-spin custom exceptions and error handling utilities.

Every error surfaced to the command layer derives from :class:`WpSpinError`
and carries a ``details`` mapping with enough context (hostname, port,
project path, raw tool output) for the user to act on.
"""

from __future__ import annotations

import logging
import subprocess
import traceback
from typing import Optional, Any, Dict
from functools import wraps


class WpSpinError(Exception):
    """Base exception for all wp-spin errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(WpSpinError):
    """Raised when settings cannot be loaded or are invalid."""

    pass


# Host prerequisites ---------------------------------------------------------


class PrerequisiteMissing(WpSpinError):
    """Container engine or compose tool is not installed."""

    pass


class PrerequisiteNotRunning(WpSpinError):
    """Container engine daemon is not reachable."""

    pass


class ResourceInsufficient(WpSpinError):
    """Not enough disk space or memory for a new stack."""

    pass


# Ports ----------------------------------------------------------------------


class ProbeUnavailable(WpSpinError):
    """The host socket table could not be queried."""

    pass


class NoPortAvailable(WpSpinError):
    """The candidate scan window was exhausted."""

    pass


class PortBindConflict(WpSpinError):
    """The container engine rejected a port believed to be free."""

    def __init__(self, message: str, port: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if port is not None:
            details.setdefault("port", port)
        super().__init__(message, details)
        self.port = port


# Stacks ---------------------------------------------------------------------


class StackOperationFailed(WpSpinError):
    """A compose/engine invocation exited non-zero."""

    def __init__(self, message: str, output: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.output = output


class StackStateError(WpSpinError):
    """Illegal lifecycle transition was requested."""

    pass


# Routing --------------------------------------------------------------------


class DomainValidationError(WpSpinError):
    """Hostname is not syntactically valid."""

    pass


class RouteActivationFailed(WpSpinError):
    """The reverse proxy refused or failed to load a route."""

    pass


class TunnelError(WpSpinError):
    """Public tunnel could not be started or queried."""

    pass


# Persistence ----------------------------------------------------------------


class RegistryCorrupt(WpSpinError):
    """A persisted JSON store could not be parsed."""

    pass


class LockTimeout(WpSpinError):
    """An exclusive store lock could not be acquired in time."""

    pass


class ErrorHandler:
    """Centralized error handling utilities."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def log_and_raise(
        self,
        exception_class: type[WpSpinError],
        message: str,
        original_error: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log an error and raise a wp-spin exception."""
        error_details = details or {}

        if original_error:
            error_details["original_error"] = str(original_error)
            error_details["original_type"] = type(original_error).__name__

        self.logger.error(f"❌ {message}")
        if original_error:
            self.logger.debug(f"Original error: {original_error}")
            self.logger.debug(f"Traceback: {traceback.format_exc()}")

        if original_error:
            raise exception_class(message, error_details) from original_error
        raise exception_class(message, error_details)

    def handle_subprocess_error(
        self, cmd: list[str], error: Exception, operation: str = "command execution"
    ) -> None:
        """Map a subprocess failure onto the wp-spin hierarchy and raise it."""
        if isinstance(error, FileNotFoundError):
            self.log_and_raise(
                PrerequisiteMissing,
                f"Executable not found for {operation}: {cmd[0]}",
                error,
                {"command": " ".join(cmd)},
            )
        elif isinstance(error, subprocess.CalledProcessError):
            output = error.stderr or error.stdout or "No error output"
            details = {
                "command": " ".join(cmd),
                "returncode": error.returncode,
                "stderr": output,
            }
            self.logger.error(f"❌ Failed {operation}: {' '.join(cmd)}")
            raise StackOperationFailed(
                f"Failed {operation}: {' '.join(cmd)}", output=output, details=details
            ) from error
        elif isinstance(error, subprocess.TimeoutExpired):
            details = {"command": " ".join(cmd), "timeout": error.timeout}
            self.log_and_raise(
                StackOperationFailed,
                f"Command timed out after {error.timeout}s: {' '.join(cmd)}",
                error,
                details,
            )
        else:
            self.log_and_raise(
                WpSpinError,
                f"Unexpected error during {operation}",
                error,
                {"command": " ".join(cmd)},
            )


def handle_errors(
    exception_class: type[WpSpinError] = WpSpinError,
    logger: Optional[logging.Logger] = None,
):
    """Decorator wrapping unexpected exceptions into ``exception_class``."""

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            handler = ErrorHandler(logger)
            try:
                return func(*args, **kwargs)
            except WpSpinError:
                raise
            except Exception as e:
                handler.log_and_raise(exception_class, f"Error in {func.__name__}", e)

        return wrapper

    return decorator


def format_error_message(error: Exception, include_traceback: bool = False) -> str:
    """Format error messages consistently."""
    if isinstance(error, WpSpinError):
        message = error.message
        context = {k: v for k, v in error.details.items() if k not in ("output", "stderr")}
        if context:
            details = ", ".join(f"{k}={v}" for k, v in context.items())
            message += f" ({details})"
    else:
        message = f"{type(error).__name__}: {str(error)}"

    if include_traceback:
        message += f"\n{traceback.format_exc()}"

    return message
