import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from typing import Optional

from app.core.config import get_settings
from app.services.orchestration.cleanup_service import CleanupService
from app.services.orchestration.polling_service import PollingService
from app.utils.time_utils import utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


class FlightPollingScheduler:
    """
    Runs background polling and lifecycle cleanup using APScheduler.
    Both jobs are single-instance so a slow cycle never overlaps the next.
    """
    
    def __init__(self, polling_service: PollingService, cleanup_service: CleanupService):
        self.scheduler = AsyncIOScheduler()
        self.polling_service = polling_service
        self.cleanup_service = cleanup_service
        self.poll_interval_seconds = settings.POLL_WORKER_INTERVAL_SECONDS
        self.cleanup_interval_minutes = settings.CLEANUP_INTERVAL_MINUTES
        self._job = None
        self._cleanup_job = None
        self._is_running = False
    
    async def start(self):
        """Start the scheduler with configured intervals"""
        if self._is_running:
            logger.warning("Scheduler already running")
            return
        
        self._job = self.scheduler.add_job(
            self._poll_job,
            trigger=IntervalTrigger(seconds=self.poll_interval_seconds),
            id="flight_poll_job",
            name="Flight Status Polling",
            replace_existing=True,
            max_instances=1,  # Prevent overlapping executions
            misfire_grace_time=self.poll_interval_seconds
        )
        
        self._cleanup_job = self.scheduler.add_job(
            self._cleanup_job_run,
            trigger=IntervalTrigger(minutes=self.cleanup_interval_minutes),
            id="flight_cleanup_job",
            name="Flight Lifecycle Cleanup",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=300
        )
        
        self.scheduler.start()
        self._is_running = True
        
        logger.info(f"Polling scheduler started with {self.poll_interval_seconds}s interval (budget-aware)")
        logger.info(f"Cleanup scheduler started with {self.cleanup_interval_minutes}min interval")
    
    async def stop(self):
        """Stop the scheduler"""
        if not self._is_running:
            logger.warning("Scheduler not running")
            return
        
        self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("Polling scheduler stopped")
    
    async def _poll_job(self):
        """Internal job method called by scheduler"""
        try:
            stats = await self.polling_service.poll_due_flights()
            if self.polling_service.halted and self._job is not None:
                self._job.pause()
                logger.error(
                    "Poll job paused until credentials are fixed",
                    extra={"reason": self.polling_service.halt_reason}
                )
            logger.debug("Scheduled poll completed", extra=stats)
        except Exception as e:
            logger.error(f"Error in polling worker: {str(e)}", exc_info=True)
    
    async def _cleanup_job_run(self):
        """Internal job method called by scheduler"""
        try:
            await self.cleanup_service.cleanup()
        except Exception as e:
            logger.error(f"Error in cleanup job: {str(e)}", exc_info=True)
    
    def resume_polling(self):
        """Clear a halt and unpause the poll job"""
        self.polling_service.resume()
        if self._job is not None and self._is_running:
            self._job.resume()
        logger.info("Polling resumed")
    
    async def trigger_manual_poll(self) -> dict:
        """
        Manually trigger a poll cycle outside the schedule.
        
        Returns:
            Poll statistics dictionary
        """
        logger.info("Manual poll triggered")
        try:
            stats = await self.polling_service.poll_due_flights()
            return {
                "status": "success",
                "triggered_at": utcnow().isoformat(),
                **stats
            }
        except Exception as e:
            logger.error(f"Error in manual poll: {str(e)}", exc_info=True)
            return {
                "status": "error",
                "error": str(e),
                "triggered_at": utcnow().isoformat()
            }
    
    async def trigger_manual_cleanup(self) -> dict:
        """Manually trigger lifecycle cleanup"""
        logger.info("Manual cleanup triggered")
        try:
            counts = await self.cleanup_service.cleanup()
            return {
                "status": "success",
                "triggered_at": utcnow().isoformat(),
                **counts
            }
        except Exception as e:
            logger.error(f"Error in manual cleanup: {str(e)}", exc_info=True)
            return {
                "status": "error",
                "error": str(e),
                "triggered_at": utcnow().isoformat()
            }
    
    def get_next_run_time(self) -> Optional[str]:
        """
        Get the next scheduled poll time.
        
        Returns:
            ISO datetime string of next run, or None if not scheduled
        """
        if self._job:
            next_run = self._job.next_run_time
            return next_run.isoformat() if next_run else None
        return None
    
    def get_status(self) -> dict:
        """
        Get scheduler status information.
        
        Returns:
            Status dictionary
        """
        return {
            "running": self._is_running,
            "poll_interval_seconds": self.poll_interval_seconds,
            "cleanup_interval_minutes": self.cleanup_interval_minutes,
            "next_run": self.get_next_run_time(),
            "job_id": self._job.id if self._job else None,
            "polling_halted": self.polling_service.halted,
            "halt_reason": self.polling_service.halt_reason,
            "last_poll": self.polling_service.last_stats,
        }
