"""
Roll Engine - Custom Error Types
Structured exceptions for dice parsing and roll execution with recovery hints.
"""
from typing import Dict, Any, List, Optional
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for the roll engine."""
    # General errors
    UNKNOWN = "UNKNOWN"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"

    # Dice notation errors
    DICE_PARSE_ERROR = "DICE_PARSE_ERROR"
    INVALID_OPERATIONS = "INVALID_OPERATIONS"

    # Engine errors
    ROLL_ENGINE_ERROR = "ROLL_ENGINE_ERROR"
    ROLL_TIMEOUT = "ROLL_TIMEOUT"


class RollEngineErrorKind(str, Enum):
    """Kinds of execution-level failures raised by the roll engine."""
    INVALID_OPERATIONS = "INVALID_OPERATIONS"
    TIMEOUT = "TIMEOUT"
    ANALYSIS_ERROR = "ANALYSIS_ERROR"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    UNSUPPORTED_STRATEGY = "UNSUPPORTED_STRATEGY"
    RANDOM_SOURCE_EXHAUSTED = "RANDOM_SOURCE_EXHAUSTED"


class GameError(Exception):
    """
    Base exception for all roll-engine errors.

    Provides structured error information with:
    - Error code for programmatic handling
    - Human-readable message
    - Additional context details
    - Recovery hints for the frontend
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.UNKNOWN,
        message: str = "An unexpected error occurred",
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
        recovery_hint: Optional[str] = None,
        http_status: int = 500
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        self.recovery_hint = recovery_hint
        self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON response."""
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
                "recoverable": self.recoverable,
                "recovery_hint": self.recovery_hint
            }
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code.value}, message={self.message!r})"


# =============================================================================
# Dice Notation Errors
# =============================================================================

class ParseError(GameError):
    """Raised when dice notation text cannot be parsed."""

    def __init__(self, expression: str, reason: str):
        super().__init__(
            code=ErrorCode.DICE_PARSE_ERROR,
            message=f'Failed to parse dice expression "{expression}": {reason}',
            details={"expression": expression, "reason": reason},
            http_status=400,
            recovery_hint="Use notation like 1d20+5, 2d20kh1 or attack:1d20+5,damage:1d8+3"
        )
        self.expression = expression
        self.reason = reason


class OperationValidationError(GameError):
    """Raised when dice operations are semantically invalid for their dice."""

    def __init__(self, expression: str, errors: List[str]):
        super().__init__(
            code=ErrorCode.INVALID_OPERATIONS,
            message=f"Invalid dice operations: {', '.join(errors)}",
            details={"expression": expression, "errors": list(errors)},
            http_status=400,
            recovery_hint="Keep/drop counts must be below the dice count and values within the die range"
        )
        self.expression = expression
        self.errors = list(errors)


# =============================================================================
# Engine Errors
# =============================================================================

class RollEngineError(GameError):
    """
    Execution-level failure inside the roll engine.

    Carries the failing definition, roll id and elapsed time so callers can
    log the failure and decide whether to retry.
    """

    def __init__(
        self,
        kind: RollEngineErrorKind,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        context = dict(context or {})
        if cause is not None:
            context.setdefault("cause", f"{type(cause).__name__}: {cause}")
        super().__init__(
            code=_ERROR_CODES.get(kind, ErrorCode.ROLL_ENGINE_ERROR),
            message=message,
            details={"kind": kind.value, **_jsonable(context)},
            recoverable=kind in (RollEngineErrorKind.TIMEOUT, RollEngineErrorKind.INVALID_OPERATIONS),
            recovery_hint=_RECOVERY_HINTS.get(kind),
            http_status=_HTTP_STATUS.get(kind, 500),
        )
        self.kind = kind
        self.context = context
        self.cause = cause


_ERROR_CODES = {
    RollEngineErrorKind.INVALID_OPERATIONS: ErrorCode.INVALID_OPERATIONS,
    RollEngineErrorKind.TIMEOUT: ErrorCode.ROLL_TIMEOUT,
}

_HTTP_STATUS = {
    RollEngineErrorKind.INVALID_OPERATIONS: 400,
    RollEngineErrorKind.TIMEOUT: 504,
}

_RECOVERY_HINTS = {
    RollEngineErrorKind.INVALID_OPERATIONS: "Fix the dice expression and roll again",
    RollEngineErrorKind.TIMEOUT: "Try the roll again",
    RollEngineErrorKind.UNSUPPORTED_STRATEGY: "Use the double_dice critical damage strategy",
}


def _jsonable(context: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only JSON-friendly context values for error responses."""
    result = {}
    for key, value in context.items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            result[key] = value
        elif isinstance(value, (list, tuple)):
            result[key] = [str(v) for v in value]
        elif callable(getattr(value, "summary", None)):
            result[key] = value.summary()
        else:
            result[key] = str(value)
    return result


# =============================================================================
# Validation Error
# =============================================================================

class ValidationError(GameError):
    """Input validation errors."""

    def __init__(self, field: str, message: str, value: Any = None):
        details = {"field": field}
        if value is not None:
            details["value"] = str(value)
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            details=details,
            http_status=400,
            recovery_hint=f"Check the value for '{field}'"
        )
