"""
Core module initialization.
Exports configuration, logging utilities and the error taxonomy.
"""

from bistro.core.config import get_settings, Settings, EnvironmentMode
from bistro.core.errors import (
    BistroError,
    ValidationError,
    InvalidStateError,
    AuthorizationError,
    AuthenticationError,
    NotFoundError,
    ExternalServiceError,
)

__all__ = [
    "get_settings",
    "Settings",
    "EnvironmentMode",
    "BistroError",
    "ValidationError",
    "InvalidStateError",
    "AuthorizationError",
    "AuthenticationError",
    "NotFoundError",
    "ExternalServiceError",
]
