"""
Structured Validation Error Utilities

Provides standardized error responses for validation failures so the
reconciliation UI can tell a bad request apart from a conflict or an outage.

Error Response Format:
{
    "error": "missing_parameter" | "invalid_parameter" | "validation_error",
    "parameter": "matched_type",
    "message": "matched_type must be one of: invoice, expense"
}
"""

import uuid
from typing import Optional, Any, Iterable

from fastapi import HTTPException, status


class ValidationErrorResponse:
    """Structured validation error response builder."""

    @staticmethod
    def missing_parameter(parameter: str, message: Optional[str] = None) -> dict:
        return {
            "error": "missing_parameter",
            "parameter": parameter,
            "message": message or f"{parameter} is required"
        }

    @staticmethod
    def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
        """
        Create an invalid parameter error response.

        Args:
            parameter: Name of the invalid parameter
            message: Description of the validation error
            value: The invalid value (optional, for debugging)
        """
        response = {
            "error": "invalid_parameter",
            "parameter": parameter,
            "message": message
        }
        if value is not None:
            response["received_value"] = str(value)[:100]  # Truncate for safety
        return response

    @staticmethod
    def validation_error(message: str, details: Optional[dict] = None) -> dict:
        response = {
            "error": "validation_error",
            "parameter": None,
            "message": message
        }
        if details:
            response["details"] = details
        return response


def raise_missing_parameter(parameter: str, message: Optional[str] = None):
    """Raise a 422 HTTPException for a missing parameter."""
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.missing_parameter(parameter, message)
    )


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None):
    """Raise a 422 HTTPException for an invalid parameter."""
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.invalid_parameter(parameter, message, value)
    )


def raise_validation_error(message: str, details: Optional[dict] = None):
    """Raise a 422 HTTPException for a general validation failure."""
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.validation_error(message, details)
    )


def validate_required_uuid(value: Optional[str], parameter: str) -> str:
    """
    Validate that a required UUID parameter is present and valid.

    Returns:
        The validated value

    Raises:
        HTTPException with structured error if validation fails
    """
    if not value:
        raise_missing_parameter(parameter)

    try:
        uuid.UUID(value)
    except ValueError:
        raise_invalid_parameter(parameter, f"{parameter} must be a valid UUID format", value)
    return value


def validate_optional_uuid(value: Optional[str], parameter: str) -> Optional[str]:
    """Validate that an optional UUID parameter is valid if provided."""
    if not value:
        return None
    return validate_required_uuid(value, parameter)


def validate_choice(value: Optional[str], parameter: str, choices: Iterable[str]) -> Optional[str]:
    """Validate that an optional parameter is one of the allowed values."""
    if value is None:
        return None
    allowed = list(choices)
    if value not in allowed:
        raise_invalid_parameter(
            parameter,
            f"{parameter} must be one of: {', '.join(allowed)}",
            value
        )
    return value
