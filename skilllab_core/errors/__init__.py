# =============================================================================
# skilllab_core/errors/__init__.py
# Centralized Error Handling for the SkillLab attendance tracker
# =============================================================================

from .exceptions import (
    SkillLabError,
    CapacityExceededError,
    RemoteUnavailableError,
    ValidationError,
    RecordNotFoundError,
    AuthenticationError,
    ConfigurationError,
)

from .handlers import handle_error

__all__ = [
    # Exceptions
    "SkillLabError",
    "CapacityExceededError",
    "RemoteUnavailableError",
    "ValidationError",
    "RecordNotFoundError",
    "AuthenticationError",
    "ConfigurationError",
    # Handlers
    "handle_error",
]
