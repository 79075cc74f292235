"""
Investment Engine Composition

Wires storage, audit, plans, rates, lifecycle, batch payouts and analytics
together from an EngineConfig. Collaborators (ledger, clock, notification
sink, market data) can be injected; otherwise the storage-backed defaults are
used.
"""

from decimal import Decimal
from datetime import datetime
from typing import List, Optional

from .config import EngineConfig, get_config
from .currency import Currency
from .storage import StorageInterface, create_storage
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .ledger import Ledger, StorageLedger
from .notifications import (
    NotificationSink, LogNotificationSink, InAppNotificationSink,
    WebhookNotificationSink, CompositeNotificationSink
)
from .plans import PlanManager, PayoutFrequency
from .rates import RateOverrideManager, RateResolver
from .investments import InvestmentRepository
from .payouts import PayoutScheduler, ReturnCalculation
from .penalties import WithdrawalPenaltyCalculator
from .lifecycle import InvestmentLifecycleManager
from .batch import PayoutBatchRunner
from .analytics import PortfolioAnalytics, MarketDataFeed
from .logging_config import setup_logging, get_logger, log_action

logger = get_logger("investment_core.engine")


def build_notifier(config: EngineConfig, storage: StorageInterface) -> NotificationSink:
    """Log sink always; in-app and webhook sinks when enabled in config"""
    sinks: List[NotificationSink] = [LogNotificationSink()]
    if config.enable_in_app_notifications:
        sinks.append(InAppNotificationSink(storage))
    if config.notification_webhook_url:
        sinks.append(WebhookNotificationSink(config.notification_webhook_url,
                                             timeout=config.notification_webhook_timeout))
    return CompositeNotificationSink(sinks)


class InvestmentEngine:
    """
    Fully wired investment engine
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        storage: Optional[StorageInterface] = None,
        ledger: Optional[Ledger] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[NotificationSink] = None,
        market_data: Optional[MarketDataFeed] = None,
        configure_logging: bool = True
    ):
        self.config = config or get_config()
        if configure_logging:
            setup_logging(self.config.log_level, self.config.log_format, self.config.log_file)

        self.storage = storage or create_storage(self.config.database_url)
        self.clock = clock or SystemClock()
        self.audit_trail = AuditTrail(self.storage, clock=self.clock)
        self.ledger = ledger or StorageLedger(self.storage, self.clock)
        self.notifier = notifier or build_notifier(self.config, self.storage)

        self.plans = PlanManager(self.storage, self.audit_trail, clock=self.clock)
        self.overrides = RateOverrideManager(self.storage, self.audit_trail, self.clock)
        self.rate_resolver = RateResolver(self.plans, self.overrides, self.clock)
        self.repository = InvestmentRepository(self.storage)
        self.scheduler = PayoutScheduler(self.plans, self.config)
        self.penalties = WithdrawalPenaltyCalculator(self.config)

        self.lifecycle = InvestmentLifecycleManager(
            storage=self.storage,
            audit_trail=self.audit_trail,
            repository=self.repository,
            plan_store=self.plans,
            rate_resolver=self.rate_resolver,
            ledger=self.ledger,
            scheduler=self.scheduler,
            penalty_calculator=self.penalties,
            override_manager=self.overrides,
            notifier=self.notifier,
            clock=self.clock,
            config=self.config
        )
        self.batch = PayoutBatchRunner(self.repository, self.lifecycle, self.scheduler,
                                       self.audit_trail, self.clock, self.config)
        self.analytics = PortfolioAnalytics(self.repository, self.plans, self.scheduler,
                                            self.penalties, market_data, self.clock, self.config)

    def calculate_returns(self, amount: Decimal, term_months: int, rate: Decimal,
                          frequency: PayoutFrequency, start: Optional[datetime] = None,
                          currency: Optional[Currency] = None) -> ReturnCalculation:
        """Return quote in the configured default currency unless one is given"""
        return self.scheduler.calculate_returns(
            amount, term_months, rate, frequency, start or self.clock.now(),
            currency or Currency.from_code(self.config.default_currency)
        )

    def start(self) -> None:
        """Start the recurring payout worker if enabled"""
        self.audit_trail.log_event(
            event_type=AuditEventType.SYSTEM_START,
            entity_type="system",
            entity_id="investment_engine",
            metadata={"payout_batch_enabled": self.config.payout_batch_enabled,
                      "payout_interval_seconds": self.config.payout_interval_seconds}
        )
        if self.config.payout_batch_enabled:
            self.batch.start()
        log_action(logger, "info", "Investment engine started", action="engine_start")

    def shutdown(self) -> None:
        self.batch.stop()
        self.audit_trail.log_event(
            event_type=AuditEventType.SYSTEM_STOP,
            entity_type="system",
            entity_id="investment_engine"
        )
        self.storage.close()
        log_action(logger, "info", "Investment engine stopped", action="engine_stop")
