import asyncio
import contextlib
import logging
import signal
import sys
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Mapping, Optional, Set

from app.email_utils import NotificationSender
from core.config import ConfigError, Settings, load_settings
from core.dedup import ProcessedJobSet
from core.models import JobRecord, normalize_job_details
from worker.mailbox import MailboxWatcher
from worker.umzugshilfe_engine import UmzugshilfeAutomator

# -------- CONFIG --------
QUEUE_DELAY_SECONDS = 1.0  # settle time between queued jobs
SHUTDOWN_TIMEOUT_SECONDS = 30
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
# ------------------------

log = logging.getLogger("worker")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _result(successful: List[str], failed: List[str], **extra: Any) -> Dict[str, Any]:
    return {"results": {"successful": successful, "failed": failed}, **extra}


class UmzugshilfeService:
    """
    Glues the pieces together:
    mailbox -> parser -> dedup -> browser apply -> notification.

    Only one job drives the browser at a time; jobs arriving meanwhile wait
    in a FIFO queue and run after QUEUE_DELAY_SECONDS.
    """

    def __init__(
        self,
        settings: Settings,
        automator: Optional[UmzugshilfeAutomator] = None,
        watcher: Optional[MailboxWatcher] = None,
        notifier: Optional[NotificationSender] = None,
        processed: Optional[ProcessedJobSet] = None,
        queue_delay: float = QUEUE_DELAY_SECONDS,
    ) -> None:
        self.settings = settings
        self.processed = processed if processed is not None else ProcessedJobSet()
        self.automator = automator or UmzugshilfeAutomator(settings)
        self.watcher = watcher or MailboxWatcher(settings, self.processed)
        self.notifier = notifier or NotificationSender(settings)
        self.queue_delay = queue_delay

        self.is_processing = False
        self.queue: Deque[JobRecord] = deque()
        self._pending: Set[str] = set()
        self._watcher_task: Optional[asyncio.Task] = None
        self._queue_task: Optional[asyncio.Task] = None
        self._stopping = False
        self.stats = {
            "total_jobs_processed": 0,
            "success_count": 0,
            "fail_count": 0,
            "start_time": time.time(),
        }

    # ------------------------------ jobs ------------------------------

    async def handle_new_job(self, details: Any) -> Dict[str, Any]:
        job = normalize_job_details(details)
        if job is None:
            log.warning("Invalid job details", extra={"details": repr(details)[:200]})
            return _result([], ["INVALID_DETAILS"])

        if self.processed.has(job.key):
            log.info("Job already processed, skipping", extra={"job_key": job.key})
            return _result([job.key], [])

        # jobs already waiting go first
        if self.is_processing or self.queue:
            if job.key not in self._pending:
                self._pending.add(job.key)
                self.queue.append(job)
                log.info("Job queued behind the running one", extra={"job_key": job.key, "queue": len(self.queue)})
            if not self.is_processing:
                self._schedule_queue()
            return _result([], [], queued=True)

        return await self._apply(job)

    async def _handle_mail_job(self, job: JobRecord) -> Mapping[str, Any]:
        # watcher cancellation on shutdown must not abort a running apply
        return await asyncio.shield(self.handle_new_job(job))

    async def _apply(self, job: JobRecord) -> Dict[str, Any]:
        started = time.monotonic()
        key = job.key
        self.is_processing = True
        self._pending.add(key)
        log.info("New job, applying now", extra={"job": job.describe(), "job_key": key})
        try:
            success = await self.automator.apply_to_job_by_details(job)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            successful, failed = ([key], []) if success else ([], [key])

            self.stats["total_jobs_processed"] += 1
            self.stats["success_count"] += len(successful)
            self.stats["fail_count"] += len(failed)
            if success:
                self.processed.add(key)
                await asyncio.to_thread(self.notifier.send_success, successful, elapsed_ms)

            log.info(
                "Job finished",
                extra={"job_key": key, "success": success, "ms": elapsed_ms},
            )
            return _result(successful, failed, response_time=elapsed_ms, method="job_details", timestamp=_now_iso())
        except Exception as e:
            log.exception("Job processing failed", extra={"job_key": key})
            self.stats["fail_count"] += 1
            await asyncio.to_thread(self.notifier.send_error, e, [key])
            return _result([], [key], error=str(e), timestamp=_now_iso())
        finally:
            self.is_processing = False
            self._pending.discard(key)
            self._schedule_queue()

    def _schedule_queue(self) -> None:
        if not self.queue or self._stopping:
            return
        if self._queue_task is not None and not self._queue_task.done():
            return
        self._queue_task = asyncio.create_task(self._run_queued())

    async def _run_queued(self) -> None:
        """Drain the queue in arrival order, one job at a time."""
        while self.queue and not self._stopping:
            await asyncio.sleep(self.queue_delay)
            if not self.queue or self._stopping:
                break
            job = self.queue.popleft()
            self._pending.discard(job.key)
            if self.processed.has(job.key):
                log.info("Queued job already processed, skipping", extra={"job_key": job.key})
                continue
            log.info("Processing queued job", extra={"job_key": job.key, "left": len(self.queue)})
            await self._apply(job)

    # ---------------------------- lifecycle ---------------------------

    async def start(self) -> None:
        log.info("Starting Umzugshilfe service", extra={"settings": self.settings.redacted()})
        await self.automator.initialize()
        self._watcher_task = asyncio.create_task(self.watcher.run(self._handle_mail_job))
        log.info("Email monitoring active", extra={"sender": self.settings.job_sender})

    async def stop(self) -> None:
        log.info("Shutting down")
        self._stopping = True
        if self._watcher_task is not None:
            self._watcher_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watcher_task
            self._watcher_task = None
        await self.watcher.stop()

        waited = 0.0
        while self.is_processing and waited < SHUTDOWN_TIMEOUT_SECONDS:
            await asyncio.sleep(0.5)
            waited += 0.5
        if self.is_processing:
            log.warning("In-flight job still running at shutdown", extra={"waited": waited})

        if self._queue_task is not None:
            self._queue_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._queue_task
            self._queue_task = None
        if self.queue:
            log.info("Dropping queued jobs", extra={"count": len(self.queue)})
            self.queue.clear()
        await self.automator.cleanup()
        log.info("Shutdown completed")

    # ---------------------------- reporting ---------------------------

    def uptime_seconds(self) -> int:
        return int(time.time() - self.stats["start_time"])

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "uptime": self.uptime_seconds(),
            "browser_ready": self.automator.is_ready(),
            "email_connected": self.watcher.is_connected(),
            "smtp_configured": self.notifier.configured,
        }

    def stats_snapshot(self) -> Dict[str, Any]:
        total = self.stats["total_jobs_processed"]
        return {
            **self.stats,
            "uptime": self.uptime_seconds(),
            "is_processing": self.is_processing,
            "queue_length": len(self.queue),
            "processed_jobs_count": len(self.processed),
            "success_rate": round(self.stats["success_count"] / total * 100) if total else 0,
        }


async def run_forever(service: UmzugshilfeService) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    await service.start()
    try:
        await stop.wait()
    finally:
        await service.stop()


def main() -> int:
    try:
        settings = load_settings()
    except ConfigError as e:
        configure_logging()
        log.error("Configuration error: %s", e)
        return 1

    configure_logging(settings.log_level)
    try:
        asyncio.run(run_forever(UmzugshilfeService(settings)))
    except KeyboardInterrupt:
        log.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
