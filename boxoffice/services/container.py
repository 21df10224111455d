"""BoxOffice Container - one place that wires repositories, limiters and services.

Invariants:
    - Exactly one MetricsRegistry and one RateLimiterRegistry per container;
      every service shares them by handle
    - start() launches limiter sweeps and the periodic replay-store purge;
      shutdown() stops both (idempotent)
    - Storage is chosen once at build time: SQL for the app, in-memory for tests

Design Decisions:
    - Plain class with factory functions over a DI framework: the graph is
      small and fixed, FastAPI reaches it through app.state
"""

import asyncio
import logging
from dataclasses import dataclass

from boxoffice.config import Settings
from boxoffice.core.errors import BoxOfficeError
from boxoffice.core.order_math import PromoCode
from boxoffice.core.repository_protocols import (
    EventRepository, InventoryRepository, OrderRepository, ReplayStore,
    TicketRepository,
)
from boxoffice.infrastructure.database import DatabaseSessionManager
from boxoffice.infrastructure.memory_repositories import (
    InMemoryEventRepository, InMemoryInventoryRepository, InMemoryOrderRepository,
    InMemoryReplayStore, InMemoryStore, InMemoryTicketRepository,
)
from boxoffice.infrastructure.sql_repositories import (
    SqlEventRepository, SqlInventoryRepository, SqlOrderRepository,
    SqlReplayStore, SqlTicketRepository,
)
from boxoffice.services.admin_reports import AdminReports
from boxoffice.services.checkout import CheckoutService
from boxoffice.services.inventory import InventoryReservation
from boxoffice.services.metrics import MetricsRegistry
from boxoffice.services.payment_confirmation import PaymentConfirmationService
from boxoffice.services.query_guard import QueryGuard
from boxoffice.services.rate_limiter import RateLimiterRegistry, build_policies
from boxoffice.services.ticket_issuer import TicketIssuer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Repositories:
    inventory: InventoryRepository
    events: EventRepository
    orders: OrderRepository
    tickets: TicketRepository
    replay: ReplayStore


class BoxOffice:
    def __init__(
        self,
        settings: Settings,
        repositories: Repositories,
        metrics: MetricsRegistry | None = None,
        limiters: RateLimiterRegistry | None = None,
    ):
        self.settings = settings
        self.repositories = repositories
        self.metrics = metrics or MetricsRegistry()
        self.limiters = limiters or RateLimiterRegistry(
            build_policies(settings.rate_limit_overrides, settings.rate_limit_skip),
            sweep_interval_seconds=settings.rate_limit_sweep_interval_seconds,
            on_limited=self.metrics.track_rate_limited,
        )
        self.query_guard = QueryGuard(
            self.metrics,
            threshold_ms=settings.slow_query_threshold_ms,
            timeout_ms=settings.query_timeout_ms,
        )
        self.inventory = InventoryReservation(repositories.inventory)
        self.checkout = CheckoutService(
            self.inventory, repositories.orders, repositories.events,
            self.metrics, limiter=self.limiters["order"],
        )
        self.issuer = TicketIssuer(
            repositories.tickets, repositories.events,
            settings.ticket_signing_secret, self.metrics,
            max_token_attempts=settings.max_token_attempts,
        )
        self.payments = PaymentConfirmationService(
            repositories.orders, repositories.replay, self.inventory,
            self.issuer, self.metrics, settings.webhook_signing_secret,
            max_age_seconds=settings.webhook_max_age_seconds,
            max_future_seconds=settings.webhook_max_future_seconds,
            replay_window_seconds=settings.replay_window_seconds,
        )
        self.reports = AdminReports(
            repositories.orders, repositories.tickets, self.query_guard,
        )
        self._purger: asyncio.Task | None = None
        self._promos = {
            code.upper(): PromoCode(code.upper(), promo.discount_type, promo.amount)
            for code, promo in settings.promo_codes.items()
        }

    def resolve_promo(self, code: str | None) -> PromoCode | None:
        """Configured promo for a code (case-insensitive); unknown codes resolve to None."""
        if not code:
            return None
        promo = self._promos.get(code.strip().upper())
        if promo is None:
            logger.info(f"Unknown promo code '{code}' ignored")
        return promo

    def start(self) -> None:
        self.limiters.start_all()
        if self._purger is None or self._purger.done():
            self._purger = asyncio.get_running_loop().create_task(
                self._purge_loop(), name="replay-store-purge",
            )
        logger.info(f"Rate limiters started: {', '.join(self.limiters.names)}")

    async def shutdown(self) -> None:
        await self.limiters.shutdown_all()
        task, self._purger = self._purger, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Rate limiters and replay purge stopped")

    async def _purge_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.replay_purge_interval_seconds)
            try:
                await self.payments.purge_expired_deliveries()
            except BoxOfficeError as e:
                logger.warning(
                    f"Replay store purge failed: {e.message}",
                    extra={"error_code": e.code},
                )


def build_sql(settings: Settings, db: DatabaseSessionManager) -> BoxOffice:
    return BoxOffice(
        settings,
        Repositories(
            inventory=SqlInventoryRepository(db),
            events=SqlEventRepository(db),
            orders=SqlOrderRepository(db),
            tickets=SqlTicketRepository(db),
            replay=SqlReplayStore(db),
        ),
    )


def build_memory(settings: Settings, store: InMemoryStore | None = None) -> BoxOffice:
    store = store if store is not None else InMemoryStore()
    return BoxOffice(
        settings,
        Repositories(
            inventory=InMemoryInventoryRepository(store),
            events=InMemoryEventRepository(store),
            orders=InMemoryOrderRepository(store),
            tickets=InMemoryTicketRepository(store),
            replay=InMemoryReplayStore(store),
        ),
    )
