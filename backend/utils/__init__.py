"""
Utils Package

Provides utility modules for:
- validation_errors: Structured 422 responses for request validation
"""

from .validation_errors import (
    ValidationErrorResponse,
    raise_missing_parameter,
    raise_invalid_parameter,
    raise_validation_error,
    validate_required_uuid,
    validate_optional_uuid,
    validate_choice,
)

__all__ = [
    'ValidationErrorResponse',
    'raise_missing_parameter',
    'raise_invalid_parameter',
    'raise_validation_error',
    'validate_required_uuid',
    'validate_optional_uuid',
    'validate_choice',
]
