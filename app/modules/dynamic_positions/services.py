"""
Service construction.

Builds every dynamic position service exactly once from settings; the
application lifespan owns the result.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.config.settings import Settings
from app.infrastructure.exchanges.factory import ExchangeFactory
from app.modules.dynamic_positions.audit import AuditTrail
from app.modules.dynamic_positions.fill_detector import OrderFillDetector
from app.modules.dynamic_positions.models import MonitoringSettings
from app.modules.dynamic_positions.orchestrator import DynamicPositionOrchestrator
from app.modules.dynamic_positions.order_cleanup import OrphanedOrderCleaner
from app.modules.dynamic_positions.planner import MultiTierExecutionPlanner
from app.modules.dynamic_positions.repository import PositionStateStore
from app.modules.dynamic_positions.sl_manager import DynamicStopLossManager


@dataclass
class DynamicPositionServices:
    store: PositionStateStore
    exchange_factory: ExchangeFactory
    audit: AuditTrail
    planner: MultiTierExecutionPlanner
    fill_detector: OrderFillDetector
    sl_manager: DynamicStopLossManager
    orchestrator: DynamicPositionOrchestrator
    order_cleaner: OrphanedOrderCleaner

    async def shutdown(self) -> None:
        await self.orchestrator.stop()
        await self.exchange_factory.close_all()


def monitoring_settings_from(settings: Settings) -> MonitoringSettings:
    return MonitoringSettings(
        check_interval_seconds=int(settings.FILL_CHECK_INTERVAL_SECONDS),
        max_retries=settings.SL_MAX_RETRIES,
        break_even_buffer=Decimal(str(settings.BREAK_EVEN_BUFFER)),
        trailing_distance=Decimal(str(settings.TRAILING_DISTANCE)),
    )


def build_services(
    db: AsyncIOMotorDatabase,
    settings: Settings,
    exchange_factory: Optional[ExchangeFactory] = None,
) -> DynamicPositionServices:
    store = PositionStateStore(
        db,
        use_transactions=settings.MONGODB_USE_TRANSACTIONS,
        default_settings=monitoring_settings_from(settings),
    )
    if exchange_factory is None:
        exchange_factory = ExchangeFactory(
            credentials=settings.exchange_credentials(),
            base_url=settings.GATEIO_BASE_URL,
            timeout_seconds=settings.EXCHANGE_REQUEST_TIMEOUT_SECONDS,
        )
    audit = AuditTrail(store)

    planner = MultiTierExecutionPlanner(
        store,
        exchange_factory,
        audit,
        min_multi_tier_contracts=settings.MULTI_TIER_MIN_CONTRACTS,
        tier1_offset=Decimal(str(settings.TIER1_PRICE_OFFSET)),
        tier2_offset=Decimal(str(settings.TIER2_PRICE_OFFSET)),
    )
    fill_detector = OrderFillDetector(
        store,
        exchange_factory,
        audit,
        check_interval_seconds=settings.FILL_CHECK_INTERVAL_SECONDS,
    )
    sl_manager = DynamicStopLossManager(
        store,
        exchange_factory,
        audit,
        retry_delay_seconds=settings.SL_RETRY_DELAY_SECONDS,
    )
    orchestrator = DynamicPositionOrchestrator(
        store,
        fill_detector,
        sl_manager,
        audit,
        cycle_interval_seconds=settings.ORCHESTRATOR_CYCLE_SECONDS,
    )

    return DynamicPositionServices(
        store=store,
        exchange_factory=exchange_factory,
        audit=audit,
        planner=planner,
        fill_detector=fill_detector,
        sl_manager=sl_manager,
        orchestrator=orchestrator,
        order_cleaner=OrphanedOrderCleaner(exchange_factory),
    )
