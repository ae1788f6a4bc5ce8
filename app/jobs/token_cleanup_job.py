"""
Login Token Cleanup Job.

Deletes pending_login_tokens rows that can no longer take part in a
handshake: expired or over-age unused tokens, which are tombstoned so a
later poll still reports them expired, and consumed tokens older
than the retention window.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger
from app.models.domain.login_domain import utc_now
from app.repositories.login_token_repository import login_token_repository
from app.services.login.token_registry import token_tombstones

logger = get_logger(__name__)

MAX_PROCESSING_TIME_MINUTES = 5
SCHEDULER_ERROR_BACKOFF_SECONDS = 300


class CleanupMetrics:
    """Metrics tracking for one cleanup run."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self.reset()

    def reset(self):
        self.start_time = self._clock()
        self.expired_deleted = 0
        self.used_deleted = 0
        self.processing_errors = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_deletions(self, expired: int, used: int):
        self.expired_deleted += expired
        self.used_deleted += used

    def record_processing_error(self, operation: str, error: str):
        self.processing_errors += 1
        self.errors.append(
            {
                "operation": operation,
                "error": error,
                "timestamp": self._clock().isoformat(),
            }
        )
        logger.error(
            "Token cleanup processing error",
            operation=operation,
            error=error,
            job_run="token_cleanup",
        )

    def finalize(self):
        self.total_duration_seconds = (self._clock() - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "token_cleanup",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "expired_deleted": self.expired_deleted,
            "used_deleted": self.used_deleted,
            "processing_errors": self.processing_errors,
            "errors_count": len(self.errors),
        }


class TokenCleanupJob:
    """Periodic maintenance of the login token table."""

    def __init__(
        self,
        repository=None,
        tombstones=None,
        clock: Callable[[], datetime] = utc_now,
        max_age_seconds: int | None = None,
        used_retention_minutes: int | None = None,
    ):
        self.repository = repository or login_token_repository
        self.tombstones = tombstones or token_tombstones
        self.clock = clock
        self.max_age_seconds = max_age_seconds or settings.LOGIN_TOKEN_MAX_AGE_SECONDS
        self.used_retention_minutes = used_retention_minutes or settings.USED_TOKEN_RETENTION_MINUTES
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = CleanupMetrics(clock)

    async def run_once(self) -> dict:
        """
        Run a single cleanup pass.

        Returns:
            Dict: job metrics
        """
        if self.is_running:
            logger.warning("Token cleanup job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            logger.info("Starting token cleanup job")

            await asyncio.wait_for(self._cleanup(), timeout=MAX_PROCESSING_TIME_MINUTES * 60)

            self.job_metrics.finalize()
            self.last_run_time = self.clock()
            metrics = self.job_metrics.to_dict()
            logger.info("Token cleanup job completed", **metrics)
            return metrics

        except TimeoutError:
            logger.error("Token cleanup job timed out", timeout_minutes=MAX_PROCESSING_TIME_MINUTES)
            self.job_metrics.finalize()
            metrics = self.job_metrics.to_dict()
            metrics["job_error"] = f"Timed out after {MAX_PROCESSING_TIME_MINUTES} minutes"
            return metrics

        except Exception as e:
            self.job_metrics.record_processing_error("delete_stale", str(e))
            self.job_metrics.finalize()
            metrics = self.job_metrics.to_dict()
            metrics["job_error"] = str(e)
            return metrics

        finally:
            self.is_running = False

    async def _cleanup(self):
        result = await self.repository.delete_stale(
            self.clock(), self.max_age_seconds, self.used_retention_minutes
        )
        self.job_metrics.record_deletions(result["expired_deleted"], result["used_deleted"])
        await self.tombstones.bury_many(result.get("expired_tokens", []))

    def health_check(self) -> dict:
        overdue_threshold = timedelta(minutes=settings.TOKEN_CLEANUP_INTERVAL_MINUTES * 2)
        is_overdue = (
            self.last_run_time is not None
            and (self.clock() - self.last_run_time) > overdue_threshold
        )
        return {
            "healthy": not is_overdue,
            "service": "token_cleanup_job",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
            "configuration": {
                "interval_minutes": settings.TOKEN_CLEANUP_INTERVAL_MINUTES,
                "used_retention_minutes": self.used_retention_minutes,
                "max_age_seconds": self.max_age_seconds,
            },
        }


# Singleton instance for application use
token_cleanup_job = TokenCleanupJob()


async def run_token_cleanup_job() -> dict:
    """Run a single iteration of the token cleanup job."""
    return await token_cleanup_job.run_once()


async def start_token_cleanup_scheduler():
    """
    Run the cleanup job forever at TOKEN_CLEANUP_INTERVAL_MINUTES.

    Meant for a dedicated worker process (see app/jobs/worker.py).
    """
    interval_seconds = settings.TOKEN_CLEANUP_INTERVAL_MINUTES * 60
    logger.info("Starting token cleanup scheduler", interval_minutes=settings.TOKEN_CLEANUP_INTERVAL_MINUTES)

    await db_pool.initialize()
    try:
        while True:
            try:
                await run_token_cleanup_job()
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                logger.info("Token cleanup scheduler cancelled")
                raise
            except Exception as e:
                logger.error(
                    "Error in token cleanup scheduler", error=str(e), error_type=type(e).__name__
                )
                await asyncio.sleep(SCHEDULER_ERROR_BACKOFF_SECONDS)
    finally:
        await db_pool.close()


async def run_token_cleanup_standalone() -> dict:
    """One cleanup pass with its own database pool (cron-style invocation)."""
    await db_pool.initialize()
    try:
        return await run_token_cleanup_job()
    finally:
        await db_pool.close()
