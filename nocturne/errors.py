"""Module errors: structured error taxonomy for the nocturne correlation engine."""
#
# PURPOSE:
# Provides error codes, categories and typed exceptions so every failure of a
# synthesis run surfaces as one searchable code plus a diagnostic log entry.
#
# ERROR CODE FORMAT:
# - SYNTHESIS_XXX: Run lifecycle errors (busy, too soon, aborted)
# - STORE_XXX: Persistent store errors
# - CONFIG_XXX: Configuration errors
#
# USAGE:
#   from nocturne.errors import NocturneError, ErrorCode
#
#   raise NocturneError(
#       ErrorCode.STORE_WRITE_FAILED,
#       "Could not persist report",
#       details={"synthesis_id": report.synthesis_id}
#   )
#
import json
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    # Synthesis Errors
    SYNTHESIS_ALREADY_RUNNING = "SYNTHESIS_001"
    SYNTHESIS_TOO_SOON = "SYNTHESIS_002"
    SYNTHESIS_CANCELLED = "SYNTHESIS_003"
    SYNTHESIS_THERMAL_ABORT = "SYNTHESIS_004"
    SYNTHESIS_FAILED = "SYNTHESIS_005"

    # Store Errors
    STORE_INIT_FAILED = "STORE_001"
    STORE_WRITE_FAILED = "STORE_002"
    STORE_READ_FAILED = "STORE_003"
    STORE_NOT_INITIALIZED = "STORE_004"
    STORE_QUOTA_EXCEEDED = "STORE_005"
    STORE_CODEC_FAILED = "STORE_006"

    # Config Errors
    CONFIG_INVALID = "CONFIG_001"
    CONFIG_PARSE_ERROR = "CONFIG_002"


class ErrorCategory(str, Enum):
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    THERMAL_EMERGENCY = "thermal_emergency"
    RUN_CONFLICT = "run_conflict"
    PERSISTENCE = "persistence"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class NocturneError(Exception):
    """
    Base exception class for nocturne with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g., "SYNTHESIS_001")
        message: Human-readable error message
        details: Optional dictionary with additional context
        category: ErrorCategory derived from the code
    """

    CATEGORY_MAP: Dict[ErrorCode, ErrorCategory] = {
        ErrorCode.SYNTHESIS_ALREADY_RUNNING: ErrorCategory.RUN_CONFLICT,
        ErrorCode.SYNTHESIS_TOO_SOON: ErrorCategory.RUN_CONFLICT,
        ErrorCode.SYNTHESIS_CANCELLED: ErrorCategory.INTERNAL,
        ErrorCode.SYNTHESIS_THERMAL_ABORT: ErrorCategory.THERMAL_EMERGENCY,
        ErrorCode.SYNTHESIS_FAILED: ErrorCategory.INTERNAL,

        ErrorCode.STORE_INIT_FAILED: ErrorCategory.PERSISTENCE,
        ErrorCode.STORE_WRITE_FAILED: ErrorCategory.PERSISTENCE,
        ErrorCode.STORE_READ_FAILED: ErrorCategory.PERSISTENCE,
        ErrorCode.STORE_NOT_INITIALIZED: ErrorCategory.PERSISTENCE,
        ErrorCode.STORE_QUOTA_EXCEEDED: ErrorCategory.RESOURCE_EXHAUSTION,
        ErrorCode.STORE_CODEC_FAILED: ErrorCategory.PERSISTENCE,

        ErrorCode.CONFIG_INVALID: ErrorCategory.CONFIGURATION,
        ErrorCode.CONFIG_PARSE_ERROR: ErrorCategory.CONFIGURATION,
    }

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize a NocturneError.

        Args:
            code: ErrorCode enum value
            message: Human-readable error message
            details: Optional dictionary with additional context
        """
        self.code = code
        self.message = message
        self.details = details or {}
        self.category = self.CATEGORY_MAP.get(code, ErrorCategory.INTERNAL)

        # Build exception message with code for easy debugging
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "category": self.category.value,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NocturneError":
        """
        Deserialize error from dictionary.

        Args:
            data: Dictionary with code, message, details

        Returns:
            NocturneError instance
        """
        code = ErrorCode(data["code"])
        return cls(code, data["message"], data.get("details", {}))


class SynthesisBusyError(NocturneError):
    """A synthesis run was requested while another one is active."""

    def __init__(self, active_id: Optional[str] = None):
        super().__init__(
            ErrorCode.SYNTHESIS_ALREADY_RUNNING,
            "Synthesis already in progress",
            details={"active_synthesis_id": active_id},
        )


class SynthesisTooSoonError(NocturneError):
    """A synthesis run was requested before the minimum interval elapsed."""

    def __init__(self, retry_after: float):
        self.retry_after = retry_after
        super().__init__(
            ErrorCode.SYNTHESIS_TOO_SOON,
            f"Synthesis interval not met, retry in {retry_after:.1f}s",
            details={"retry_after_seconds": retry_after},
        )


class SynthesisAbortedError(NocturneError):
    """The in-flight run was cancelled externally or by the thermal controller."""

    def __init__(self, reason: str, thermal: bool = False):
        self.reason = reason
        super().__init__(
            ErrorCode.SYNTHESIS_THERMAL_ABORT if thermal else ErrorCode.SYNTHESIS_CANCELLED,
            f"Synthesis aborted: {reason}",
            details={"reason": reason},
        )


class PersistenceError(NocturneError):
    """A read or write against the persistent store failed."""


class ConfigError(NocturneError):
    """A configuration value is out of range."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        super().__init__(code, message, details)


# ============================================================================
# Convenience Functions
# ============================================================================

def handle_error(error: Exception, context: Optional[str] = None) -> NocturneError:
    """
    Convert a generic exception to a NocturneError.

    Args:
        error: The original exception
        context: Optional context string (e.g., "while storing report")

    Returns:
        NocturneError with appropriate code and message
    """
    if isinstance(error, NocturneError):
        return error

    error_type = type(error).__name__

    if "sqlite" in type(error).__module__ or isinstance(error, OSError):
        code = ErrorCode.STORE_WRITE_FAILED
    elif isinstance(error, MemoryError):
        code = ErrorCode.STORE_QUOTA_EXCEEDED
    else:
        code = ErrorCode.SYNTHESIS_FAILED

    message = str(error)
    if context:
        message = f"{context}: {message}"

    return NocturneError(
        code=code,
        message=message,
        details={
            "original_type": error_type,
            "original_message": str(error),
        },
    )


__all__ = [
    "ErrorCode",
    "ErrorCategory",
    "NocturneError",
    "SynthesisBusyError",
    "SynthesisTooSoonError",
    "SynthesisAbortedError",
    "PersistenceError",
    "ConfigError",
    "handle_error",
]
