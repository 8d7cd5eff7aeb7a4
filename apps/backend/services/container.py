"""
Engine wiring.

One container per process. Routes get it through the get_container
dependency; tests override that dependency with a container built on the
in-memory repository.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from apps.backend.db import get_supabase
from apps.backend.services.errors import CredentialStoreError, EngineError
from apps.backend.services.sync.sync_orchestrator import ConnectorFactory, SyncOrchestrator
from apps.backend.services.sync.sync_scheduler import SyncScheduler
from apps.backend.services.tiers.events import EventPublisher, build_publisher
from apps.backend.services.tiers.repositories.interfaces import EngineRepository
from apps.backend.services.tiers.repositories.memory_repository import InMemoryEngineRepository
from apps.backend.services.tiers.repositories.supabase_repository import SupabaseEngineRepository
from apps.backend.services.tiers.rule_evaluator import RuleEvaluator
from apps.backend.services.tiers.spend_aggregator import SpendAggregator
from apps.backend.services.tiers.tier_service import TierService
from apps.backend.services.tiers.tier_state_machine import TierStateMachine
from apps.backend.services.tiers.transaction_ledger import TransactionLedger
from apps.backend.utils.encryption import CredentialCipher
from apps.backend.utils.settings import Settings, settings

log = logging.getLogger("nightlife.container")


@dataclass
class EngineContainer:
    config: Settings
    repo: EngineRepository
    publisher: EventPublisher
    ledger: TransactionLedger
    aggregator: SpendAggregator
    evaluator: RuleEvaluator
    state_machine: TierStateMachine
    tier_service: TierService
    orchestrator: SyncOrchestrator
    scheduler: Optional[SyncScheduler] = None


def build_repository(config: Settings) -> EngineRepository:
    if config.STORAGE_BACKEND == "memory":
        cipher = CredentialCipher(config.POS_ENCRYPTION_KEY) if config.POS_ENCRYPTION_KEY else None
        return InMemoryEngineRepository(cipher)
    if not config.POS_ENCRYPTION_KEY:
        raise CredentialStoreError("POS_ENCRYPTION_KEY is required with the supabase storage backend")
    sb = get_supabase()
    if sb is None:
        raise EngineError("Supabase client unavailable", 500)
    return SupabaseEngineRepository(sb, CredentialCipher(config.POS_ENCRYPTION_KEY))


def build_container(
    config: Settings = settings,
    *,
    repo: Optional[EngineRepository] = None,
    publisher: Optional[EventPublisher] = None,
    connector_factory: Optional[ConnectorFactory] = None,
) -> EngineContainer:
    repo = repo or build_repository(config)
    publisher = publisher or build_publisher(config.NOTIFY_WEBHOOK_URL)

    ledger = TransactionLedger(repo, page_size=config.LEDGER_PAGE_SIZE)
    aggregator = SpendAggregator(ledger, repo, window_days=config.SPEND_WINDOW_DAYS)
    evaluator = RuleEvaluator(repo, default_timezone=config.DEFAULT_VENUE_TIMEZONE)
    state_machine = TierStateMachine(repo, publisher, default_timezone=config.DEFAULT_VENUE_TIMEZONE)
    tier_service = TierService(repo, ledger, aggregator, evaluator, state_machine)
    orchestrator = SyncOrchestrator(
        repo, ledger, tier_service, publisher, config, connector_factory=connector_factory
    )
    return EngineContainer(
        config=config,
        repo=repo,
        publisher=publisher,
        ledger=ledger,
        aggregator=aggregator,
        evaluator=evaluator,
        state_machine=state_machine,
        tier_service=tier_service,
        orchestrator=orchestrator,
    )


def attach_scheduler(container: EngineContainer, scheduler: AsyncIOScheduler) -> SyncScheduler:
    sync_scheduler = SyncScheduler(scheduler, container.orchestrator)
    container.scheduler = sync_scheduler
    container.orchestrator.scheduler = sync_scheduler
    return sync_scheduler


_container: Optional[EngineContainer] = None


def get_container() -> EngineContainer:
    global _container
    if _container is None:
        _container = build_container()
        log.info(f"[CONTAINER] engine ready (storage={_container.config.STORAGE_BACKEND})")
    return _container
