# =============================================================================
# skilllab_core/errors/exceptions.py
# Custom Exception Hierarchy for the SkillLab attendance tracker
# =============================================================================

from typing import Optional, Dict, Any


class SkillLabError(Exception):
    """
    Base exception for all SkillLab errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "DATA_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "SL_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# STORAGE LAYER EXCEPTIONS
# =============================================================================

class CapacityExceededError(SkillLabError):
    """Local cache write would exceed the store's capacity"""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        required: Optional[int] = None,
        capacity: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if key:
            details["key"] = key
        if required is not None:
            details["required"] = required
        if capacity is not None:
            details["capacity"] = capacity

        super().__init__(
            message=message,
            code="CACHE_001",
            details=details,
            **kwargs,
        )


class RemoteUnavailableError(SkillLabError):
    """Remote store is unreachable or not configured"""

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if collection:
            details["collection"] = collection
        if operation:
            details["operation"] = operation

        super().__init__(
            message=message,
            code="REMOTE_001",
            details=details,
            **kwargs,
        )


# =============================================================================
# DATA LAYER EXCEPTIONS
# =============================================================================

class ValidationError(SkillLabError):
    """Raised when a record fails validation checks"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        expected: Optional[str] = None,
        actual: Optional[Any] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if expected:
            details["expected"] = expected
        if actual is not None:
            details["actual"] = actual

        super().__init__(
            message=message,
            code="DATA_001",
            details=details,
            **kwargs,
        )


class RecordNotFoundError(SkillLabError):
    """Raised when a mutation targets a record id that does not exist"""

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        record_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if collection:
            details["collection"] = collection
        if record_id:
            details["record_id"] = record_id

        super().__init__(
            message=message,
            code="DATA_404",
            details=details,
            **kwargs,
        )


# =============================================================================
# AUTHENTICATION EXCEPTIONS
# =============================================================================

class AuthenticationError(SkillLabError):
    """Raised on a credential mismatch or an unknown/inactive user"""

    def __init__(self, message: str = "Invalid username or password", **kwargs):
        super().__init__(
            message=message,
            code="AUTH_001",
            **kwargs,
        )


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(SkillLabError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
