"""
Orphaned order cleanup.

Conditional orders left open on a contract that no longer has a position
(closed manually, liquidated, or after a partial rollback) are cancelled.
"""

from typing import Any, Dict, List

from app.infrastructure.exchanges.factory import ExchangeFactory
from app.infrastructure.exchanges.schemas import TriggerOrderStatus
from app.shared.exceptions import ExchangeError, OrderNotFoundError
from app.utils.logger import get_logger

logger = get_logger(__name__)


class OrphanedOrderCleaner:
    def __init__(self, exchange_factory: ExchangeFactory):
        self.exchange_factory = exchange_factory

    async def cleanup_orphaned_orders(self, credential_ref: str, settle: str) -> Dict[str, Any]:
        """
        Cancel open trigger orders whose contract has no open position.

        Returns:
            Dict with cancelled_orders, cancellation_failures, the contracts
            considered and a summary message
        """
        client = self.exchange_factory.get_client(credential_ref, settle)
        positions = await client.list_positions()
        open_orders = await client.list_trigger_orders(TriggerOrderStatus.OPEN)

        active_contracts = {p.contract for p in positions if p.is_open}
        orphaned = [o for o in open_orders if o.contract not in active_contracts]

        cancelled: List[Dict[str, str]] = []
        failures: List[Dict[str, str]] = []
        for order in orphaned:
            try:
                await client.cancel_trigger_order(order.id)
                cancelled.append({"id": order.id, "contract": order.contract})
            except OrderNotFoundError:
                # Finished between listing and cancelling
                logger.info(f"Orphaned order {order.id} already gone ({order.contract})")
            except ExchangeError as e:
                logger.error(
                    f"Failed to cancel orphaned order {order.id} for {order.contract}: {e.message}"
                )
                failures.append({"id": order.id, "contract": order.contract, "error": e.message})

        message = (
            f"Cancelled {len(cancelled)} of {len(orphaned)} orphaned conditional order(s)"
        )
        logger.info(f"{credential_ref}:{settle}: {message}")

        return {
            "cancelled_orders": cancelled,
            "cancellation_failures": failures,
            "active_position_contracts": sorted(active_contracts),
            "orphaned_contracts": sorted({o.contract for o in orphaned}),
            "message": message,
        }
