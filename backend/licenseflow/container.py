"""
Service container.

Every long-lived service is built once here at process start and handed to
the components that need it.
"""

from typing import Optional

import structlog

from licenseflow.cache import RedisClient
from licenseflow.core.config import Settings
from licenseflow.core.database import Database
from licenseflow.services.blockchain_client import BlockchainClient
from licenseflow.services.earnings import EarningsAccrualProcessor
from licenseflow.services.notification_service import NotificationService, Notifier
from licenseflow.services.order_expirer import OrderExpirer
from licenseflow.services.settings_provider import DatabaseSettingsProvider
from licenseflow.services.telegram_bot_service import TelegramBotService
from licenseflow.services.validation import TransactionValidationProcessor
from licenseflow.scheduler.worker_pool import WorkerPool


logger = structlog.get_logger(__name__)


class Container:
    """Builds and owns the application's services."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.database = Database(settings)
        self.redis = RedisClient(settings)

        self.chain_client: Optional[BlockchainClient] = None
        self.telegram: Optional[TelegramBotService] = None
        self.settings_provider: Optional[DatabaseSettingsProvider] = None
        self.notifier: Optional[Notifier] = None
        self.earnings_processor: Optional[EarningsAccrualProcessor] = None
        self.validation_processor: Optional[TransactionValidationProcessor] = None
        self.order_expirer: Optional[OrderExpirer] = None
        self.worker_pool: Optional[WorkerPool] = None

    async def startup(self, with_queues: bool = True) -> "Container":
        """Connect to the store (and Redis) and wire the services."""
        await self.database.init()

        self.chain_client = BlockchainClient(self.settings)
        self.telegram = TelegramBotService(self.settings)
        self.settings_provider = DatabaseSettingsProvider(self.database, self.settings.settings_cache_ttl)
        self.notifier = Notifier(NotificationService(self.database, self.telegram))

        self.earnings_processor = EarningsAccrualProcessor(
            self.database,
            self.settings_provider,
            self.notifier,
            self.settings.cashback_phase_days
        )
        self.validation_processor = TransactionValidationProcessor(
            self.database,
            self.chain_client,
            self.settings_provider,
            self.notifier,
            max_retries=self.settings.validation_max_retries
        )
        self.order_expirer = OrderExpirer(self.database)

        if with_queues:
            await self.redis.connect()
            self.worker_pool = WorkerPool(
                self.redis.client,
                self.settings,
                self.earnings_processor,
                self.validation_processor,
                self.order_expirer
            )

        logger.info("Services initialized", environment=self.settings.environment, queues=with_queues)
        return self

    async def shutdown(self) -> None:
        if self.worker_pool is not None:
            await self.worker_pool.stop()
        if self.chain_client is not None:
            await self.chain_client.close()
        if self.telegram is not None:
            await self.telegram.close()
        await self.redis.disconnect()
        await self.database.close()
        logger.info("Services shut down")

    async def __aenter__(self) -> "Container":
        return await self.startup()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
