"""Wiring of the long-lived services shared by request handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..config import ExchangeConfig, SecurityConfig, Settings
from ..data import MarketDataGateway
from ..database import DatabaseManager
from ..exchanges import ExchangeService, ServiceFactory, SymbolResolver, authenticated_service_factory
from ..execution import DemoFillStrategy, ExecutionEngine, LiveFillStrategy
from ..monitoring import AlertManager, PriceBroadcaster, SubscriberHub
from ..risk import PortfolioManager, RiskEvaluator
from ..security import CredentialCipher, TokenVerifier
from ..signals import SignalAnalyzer, SignalService

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    exchange_config: ExchangeConfig
    database: DatabaseManager
    gateway: MarketDataGateway
    resolver: SymbolResolver
    engine: ExecutionEngine
    signals: SignalService
    analyzer: SignalAnalyzer
    verifier: TokenVerifier
    cipher: CredentialCipher
    service_factory: ServiceFactory
    hub: SubscriberHub = field(default_factory=SubscriberHub)
    alerts: AlertManager = field(default_factory=AlertManager)
    broadcaster: Optional[PriceBroadcaster] = None
    public_service: Optional[ExchangeService] = None

    async def close(self) -> None:
        await self.hub.close()
        await self.analyzer.close()
        if self.public_service is not None:
            await self.public_service.close()
        self.database.close()


def build_context(
    settings: Settings,
    exchange_config: ExchangeConfig,
    security_config: SecurityConfig,
    *,
    database: Optional[DatabaseManager] = None,
) -> AppContext:
    """Build the production object graph from configuration."""
    database = database or DatabaseManager(settings.database_url)
    public_service = ExchangeService(exchange_config)
    gateway = MarketDataGateway(public_service)
    resolver = SymbolResolver(public_service, ttl=exchange_config.symbol_cache_ttl)
    cipher = CredentialCipher.from_config(security_config)
    service_factory = authenticated_service_factory(exchange_config)
    alerts = AlertManager()
    portfolio_manager = PortfolioManager(
        allow_uncovered_sells=settings.allow_uncovered_sells,
        enforce_available_balance=settings.enforce_available_balance,
    )
    engine = ExecutionEngine(
        database,
        gateway,
        resolver,
        RiskEvaluator(),
        DemoFillStrategy(database, portfolio_manager),
        LiveFillStrategy(database, resolver, cipher, service_factory, exchange_config, alerts),
        portfolio_manager,
    )
    signals = SignalService(database)
    analyzer = SignalAnalyzer(
        gateway,
        resolver,
        signals,
        api_key=settings.openai_api_key,
        model=settings.openai_model,
    )
    hub = SubscriberHub()
    broadcaster = PriceBroadcaster(
        gateway,
        resolver,
        hub,
        settings.supported_symbols,
        interval=settings.broadcast_interval,
    )
    if not cipher.configured:
        logger.warning('DATA_ENCRYPTION_KEY is not set; live trading credentials cannot be stored')
    return AppContext(
        settings=settings,
        exchange_config=exchange_config,
        database=database,
        gateway=gateway,
        resolver=resolver,
        engine=engine,
        signals=signals,
        analyzer=analyzer,
        verifier=TokenVerifier(security_config),
        cipher=cipher,
        service_factory=service_factory,
        hub=hub,
        alerts=alerts,
        broadcaster=broadcaster,
        public_service=public_service,
    )


__all__ = ['AppContext', 'build_context']
