import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from apps.backend.services.sync.integration import POSIntegration
from apps.backend.services.sync.sync_orchestrator import SyncOrchestrator

log = logging.getLogger("nightlife.scheduler")

# --------------------------------------------------------
# Per-integration sync jobs
#   - one interval job per (venue_id, provider)
#   - interval stretches on failure (backoff), resets on success
#   - one live-window re-evaluation job for all venues
# --------------------------------------------------------

REEVALUATION_JOB_ID = "live_window_reevaluation"


def job_id(venue_id: str, provider: str) -> str:
    return f"pos_sync:{venue_id}:{provider}"


class SyncScheduler:
    def __init__(self, scheduler: AsyncIOScheduler, orchestrator: SyncOrchestrator) -> None:
        self.scheduler = scheduler
        self.orchestrator = orchestrator

    def schedule(self, integration: POSIntegration, delay_seconds: Optional[float] = None) -> None:
        seconds = delay_seconds if delay_seconds is not None else self.orchestrator.next_delay_seconds(integration)
        self.scheduler.add_job(
            self._run,
            "interval",
            seconds=max(1.0, float(seconds)),
            args=[integration.venue_id, integration.provider],
            id=job_id(integration.venue_id, integration.provider),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        log.info(f"[SCHEDULER] sync scheduled {integration.key} every {seconds:.0f}s")

    def unschedule(self, venue_id: str, provider: str) -> None:
        jid = job_id(venue_id, provider)
        if self.scheduler.get_job(jid) is not None:
            self.scheduler.remove_job(jid)
            log.info(f"[SCHEDULER] sync unscheduled {venue_id}:{provider}")

    def is_scheduled(self, venue_id: str, provider: str) -> bool:
        return self.scheduler.get_job(job_id(venue_id, provider)) is not None

    async def _run(self, venue_id: str, provider: str) -> None:
        integration = await self.orchestrator.repo.get_integration(venue_id, provider)
        if integration is None or integration.status in ("DISCONNECTED", "ERROR"):
            self.unschedule(venue_id, provider)
            return
        # SYNCING runs too: the cycle lock serializes with a live cycle, and a
        # dead one left the row stale.
        if not integration.is_connected or not integration.sync_config.enabled:
            return

        try:
            await self.orchestrator.run_sync_cycle(integration)
        except Exception as e:
            log.error(f"[SCHEDULER] sync job {venue_id}:{provider} failed: {e}")

        latest = await self.orchestrator.repo.get_integration(venue_id, provider)
        if latest is None or not latest.is_connected:
            self.unschedule(venue_id, provider)
            return

        # Backoff: re-arm with the new delay when it changed.
        delay = max(1.0, self.orchestrator.next_delay_seconds(latest))
        job = self.scheduler.get_job(job_id(venue_id, provider))
        if job is not None and abs(job.trigger.interval.total_seconds() - delay) > 0.5:
            self.scheduler.reschedule_job(job.id, trigger="interval", seconds=delay)

    async def restore(self) -> int:
        """
        Re-arm jobs for every CONNECTED integration (process start). No cycle
        runs yet, so a SYNCING row was left by a dead process and counts as
        CONNECTED.
        """
        count = 0
        for integration in await self.orchestrator.repo.list_integrations():
            if integration.status == "SYNCING":
                integration.status = "CONNECTED"
                await self.orchestrator.repo.save_integration(integration)
                log.warning(f"[SCHEDULER] {integration.key} was left SYNCING; restored as CONNECTED")
            if integration.status == "CONNECTED" and integration.sync_config.enabled:
                self.schedule(integration)
                count += 1
        log.info(f"[SCHEDULER] restored {count} sync job(s)")
        return count

    async def reevaluate_live_windows(self) -> None:
        """
        Venues with a connected POS get a full pass (windows that opened can
        unlock). Live-only grants anywhere else are re-checked patron by
        patron, so they still regress when the POS is gone.
        """
        repo = self.orchestrator.repo
        tier_service = self.orchestrator.tier_service
        venues = sorted({i.venue_id for i in await repo.list_integrations() if i.is_connected})
        for venue_id in venues:
            try:
                await tier_service.reevaluate_venue(venue_id)
            except Exception as e:
                log.error(f"[SCHEDULER] live-window re-evaluation failed venue={venue_id}: {e}")

        covered = set(venues)
        for venue_id, patron_id in await repo.list_live_grants():
            if venue_id in covered:
                continue
            try:
                await tier_service.reevaluate_patron(venue_id, patron_id)
            except Exception as e:
                log.error(f"[SCHEDULER] live grant re-evaluation failed venue={venue_id} patron={patron_id}: {e}")

    def schedule_reevaluation(self, interval_seconds: int) -> None:
        self.scheduler.add_job(
            self.reevaluate_live_windows,
            "interval",
            seconds=interval_seconds,
            id=REEVALUATION_JOB_ID,
            replace_existing=True,
        )
        log.info(f"[SCHEDULER] live-window re-evaluation every {interval_seconds}s")
