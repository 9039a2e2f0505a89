"""
Custom exception classes for the application.

All custom exceptions inherit from base AppException for consistent error handling.
"""

from typing import Any, Dict, List, Optional


class AppException(Exception):
    """
    Base application exception.

    All custom exceptions should inherit from this class.

    Attributes:
        message: Error message
        code: Error code
        status_code: HTTP status code
    """

    def __init__(
        self,
        message: str,
        code: str = "APP_ERROR",
        status_code: int = 500
    ):
        """
        Initialize AppException.

        Args:
            message: Error message
            code: Error code
            status_code: HTTP status code
        """
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(self.message)


class PositionNotFoundError(AppException):
    """Managed position not found."""

    def __init__(self, message: str = "Position not found"):
        super().__init__(message=message, code="POSITION_NOT_FOUND", status_code=404)


# Exchange Exceptions

class ExchangeError(AppException):
    """
    Exchange API call failed.

    Carries the contract and order id the call was about, when known.
    """

    def __init__(
        self,
        message: str = "Exchange request failed",
        code: str = "EXCHANGE_ERROR",
        status_code: int = 502,
        contract: Optional[str] = None,
        order_id: Optional[str] = None,
    ):
        self.contract = contract
        self.order_id = order_id
        context = []
        if contract:
            context.append(f"contract={contract}")
        if order_id:
            context.append(f"order_id={order_id}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message=message, code=code, status_code=status_code)


class ExchangeConnectionError(ExchangeError):
    """Connection to the exchange failed or timed out."""

    def __init__(self, message: str = "Exchange connection failed", **context):
        super().__init__(message, code="EXCHANGE_CONNECTION_ERROR", status_code=503, **context)


class ExchangeAuthenticationError(ExchangeError):
    """Exchange rejected the API credentials."""

    def __init__(self, message: str = "Exchange authentication failed", **context):
        super().__init__(message, code="EXCHANGE_AUTHENTICATION_ERROR", status_code=401, **context)


class ExchangeRateLimitError(ExchangeError):
    """Exchange rate limit exceeded."""

    def __init__(self, message: str = "Exchange rate limit exceeded", **context):
        super().__init__(message, code="EXCHANGE_RATE_LIMIT", status_code=429, **context)


class OrderNotFoundError(ExchangeError):
    """Order does not exist on the exchange (already finished or cancelled)."""

    def __init__(self, message: str = "Order not found", **context):
        super().__init__(message, code="ORDER_NOT_FOUND", status_code=404, **context)


class MalformedResponseError(ExchangeError):
    """Exchange response is missing fields or has invalid values."""

    def __init__(self, message: str = "Malformed exchange response", **context):
        super().__init__(message, code="MALFORMED_EXCHANGE_RESPONSE", status_code=502, **context)


class CredentialNotFoundError(AppException):
    """No exchange credentials configured for a reference."""

    def __init__(self, credential_ref: str):
        self.credential_ref = credential_ref
        super().__init__(
            message=f"No exchange credentials configured for '{credential_ref}'",
            code="CREDENTIAL_NOT_FOUND",
            status_code=400,
        )


# Execution Exceptions

class ExecutionError(AppException):
    """Position could not be opened; no protective orders are outstanding."""

    def __init__(self, message: str = "Position execution failed"):
        super().__init__(message=message, code="EXECUTION_ERROR", status_code=502)


class PositionAlreadyOpenError(AppException):
    """Exchange already holds a position on the contract."""

    def __init__(self, contract: str):
        self.contract = contract
        super().__init__(
            message=f"An open position already exists for {contract}",
            code="POSITION_ALREADY_OPEN",
            status_code=409,
        )


class PartialExecutionError(AppException):
    """
    Conditional order placement failed after entry.

    Placed conditional orders were rolled back and an emergency stop
    protects the open position.
    """

    def __init__(
        self,
        message: str,
        position_id: str,
        rollback_results: Optional[List[Any]] = None,
        emergency_stop_order_id: Optional[str] = None,
    ):
        self.position_id = position_id
        self.rollback_results = rollback_results or []
        self.emergency_stop_order_id = emergency_stop_order_id
        super().__init__(message=message, code="PARTIAL_EXECUTION", status_code=502)


class CriticalExecutionError(AppException):
    """
    Position is open and may be unprotected.

    Raised when rollback or the emergency stop fails. Never swallowed.
    """

    def __init__(
        self,
        message: str,
        position_id: str,
        rollback_results: Optional[List[Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.position_id = position_id
        self.rollback_results = rollback_results or []
        self.details = details or {}
        super().__init__(message=message, code="CRITICAL_EXECUTION_FAILURE", status_code=500)


class StopReplacementError(AppException):
    """Replacement stop order could not be placed after all retries."""

    def __init__(self, message: str, position_id: str, attempts: int):
        self.position_id = position_id
        self.attempts = attempts
        super().__init__(message=message, code="STOP_REPLACEMENT_FAILED", status_code=500)

