"""
Audit trail and error buffer.

Best-effort writers used outside transactions: a failure to write the
audit trail is logged and never replaces the error being reported.
"""

from typing import Any, Dict, Optional

from app.modules.dynamic_positions.models import (
    ActionAudit,
    AuditAction,
    ErrorSeverity,
    MonitoringError,
)
from app.modules.dynamic_positions.repository import PositionStateStore
from app.utils.logger import get_logger

logger = get_logger(__name__)

_LOG_LEVELS = {
    ErrorSeverity.WARNING: logger.warning,
    ErrorSeverity.ERROR: logger.error,
    ErrorSeverity.CRITICAL: logger.critical,
}


class AuditTrail:
    """Writes audit records and buffered errors for the dynamic position system."""

    def __init__(self, store: PositionStateStore):
        self.store = store

    async def log_action(
        self,
        position_id: str,
        action: AuditAction,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error: Optional[str] = None,
    ) -> None:
        audit = ActionAudit(
            position_id=position_id,
            action=action,
            details=details or {},
            success=success,
            error=error,
        )
        try:
            await self.store.append_audit(audit)
        except Exception as e:
            logger.error(f"Failed to write audit {action.value} for {position_id}: {str(e)}")

    async def record_error(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        position_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        audit: bool = True,
    ) -> None:
        """
        Log an error, push it onto the rolling buffer and, when it concerns a
        position, append an ``error_occurred`` audit.
        """
        prefix = f"[{position_id}] " if position_id else ""
        _LOG_LEVELS[severity](f"{prefix}{message}")

        try:
            await self.store.push_error(
                MonitoringError(
                    severity=severity,
                    message=message,
                    position_id=position_id,
                    context=context or {},
                )
            )
        except Exception as e:
            logger.error(f"Failed to buffer error: {str(e)}")

        if audit and position_id:
            await self.log_action(
                position_id,
                AuditAction.ERROR_OCCURRED,
                details={"severity": severity.value, **(context or {})},
                success=False,
                error=message,
            )
