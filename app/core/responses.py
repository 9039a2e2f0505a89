"""
Standardized response models for API endpoints.

All API responses follow a consistent format for success and error cases.
"""

from typing import Any, Optional
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field


class ErrorDetail(BaseModel):
    """
    Error detail model for error responses.

    Attributes:
        code: Error code (e.g., "PARTIAL_EXECUTION", "POSITION_NOT_FOUND")
        message: Detailed error message
    """
    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Detailed error message")


class StandardResponse(BaseModel):
    """
    Standard API response format.

    Attributes:
        status_code: HTTP status code
        message: Human-readable message
        data: Response data (null on error)
        error: Error details (null on success)
    """
    status_code: int = Field(..., description="HTTP status code")
    message: str = Field(..., description="Human-readable message")
    data: Optional[Any] = Field(default=None, description="Response data")
    error: Optional[ErrorDetail] = Field(default=None, description="Error details")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status_code": 200,
                "message": "System status retrieved",
                "data": {"running": True, "active_position_count": 2},
                "error": None
            }
        }
    )


def success_response(
    status_code: int,
    message: str,
    data: Any = None
) -> dict:
    """
    Create a success response.

    Args:
        status_code: HTTP status code (200, 201, etc.)
        message: Success message
        data: Response data

    Returns:
        dict: Standardized success response
    """
    return {
        "status_code": status_code,
        "message": message,
        "data": data,
        "error": None
    }


def error_response(
    status_code: int,
    message: str,
    error_code: str,
    error_message: str,
    data: Any = None
) -> dict:
    """
    Create an error response.

    Args:
        status_code: HTTP status code (400, 404, 409, 502, etc.)
        message: General error message
        error_code: Specific error code
        error_message: Detailed error message
        data: Optional context (e.g. rollback results)

    Returns:
        dict: Standardized error response

    Example:
        >>> error_response(409, "Position not opened", "POSITION_ALREADY_OPEN", "An open position already exists for BTC_USDT")
        {
            "status_code": 409,
            "message": "Position not opened",
            "data": None,
            "error": {
                "code": "POSITION_ALREADY_OPEN",
                "message": "An open position already exists for BTC_USDT"
            }
        }
    """
    return {
        "status_code": status_code,
        "message": message,
        "data": data,
        "error": {
            "code": error_code,
            "message": error_message
        }
    }


def error_json_response(
    status_code: int,
    message: str,
    error_code: str,
    error_message: str,
    data: Any = None
) -> JSONResponse:
    """Helper to create JSON error response with proper status code."""
    return JSONResponse(
        status_code=status_code,
        content=error_response(status_code, message, error_code, error_message, data),
    )
