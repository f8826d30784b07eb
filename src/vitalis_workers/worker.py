import asyncio
import logging
import signal
import time
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .config import Config
from .errors import HealthCoreError, is_caller_fault
from .locks import set_statement_timeout
from .logging import job_context, log_extra
from .metrics import (
    record_handler_invocation,
    record_job_completed,
    record_job_dead,
    record_job_failed,
)
from .registry import commits_own_work, get_handler

logger = logging.getLogger(__name__)

JOB_CHANNEL = "vitalis_jobs"


class Worker:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._shutdown = asyncio.Event()

    async def run(self) -> None:
        """Main entry point: run listen + poll loops until shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_shutdown)

        logger.info(
            "Worker starting (poll_interval=%.1fs, batch_size=%d, job_timeout=%.0fs)",
            self.config.poll_interval_seconds,
            self.config.batch_size,
            self.config.job_timeout_seconds,
        )
        if self.config.listen_database_url != self.config.database_url:
            logger.info("Worker LISTEN uses dedicated database URL")

        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._listen_loop())
            tg.create_task(self._poll_loop())

    def _request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    async def _listen_loop(self) -> None:
        """LISTEN on the job channel for instant wake-up on new jobs."""
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.listen_database_url, autocommit=True
                ) as conn:
                    await conn.execute(f"LISTEN {JOB_CHANNEL}")
                    logger.info("Listening on %s channel", JOB_CHANNEL)

                    # Reconnect only on connection loss, not on notify timeouts.
                    while not self._shutdown.is_set():
                        gen = conn.notifies(
                            timeout=self.config.poll_interval_seconds
                        )
                        async for notify in gen:
                            logger.debug("NOTIFY received: %s", notify.payload)
                            await self._process_batch()
                            if self._shutdown.is_set():
                                break
            except psycopg.OperationalError:
                if self._shutdown.is_set():
                    break
                logger.warning("LISTEN connection lost, reconnecting in 5s")
                await asyncio.sleep(5)

        logger.info("Listen loop stopped")

    async def _poll_loop(self) -> None:
        """Fallback polling loop: catches anything LISTEN misses."""
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown.wait(),
                    timeout=self.config.poll_interval_seconds,
                )
                break
            except TimeoutError:
                pass

            await self._process_batch()

        logger.info("Poll loop stopped")

    async def _process_batch(self) -> None:
        """Claim and process a batch of pending jobs."""
        try:
            async with await psycopg.AsyncConnection.connect(
                self.config.database_url
            ) as conn:
                jobs = await self._claim_jobs(conn)
                await conn.commit()  # Claims survive a crash mid-batch

                for job in jobs:
                    with job_context(
                        job_id=job["id"], job_type=job["job_type"], user_id=job.get("user_id")
                    ):
                        await self._process_job(conn, job)
        except (OSError, psycopg.Error):
            logger.exception("Error in process_batch")

    async def _claim_jobs(
        self, conn: psycopg.AsyncConnection[Any]
    ) -> list[dict[str, Any]]:
        """Claim pending jobs using SELECT FOR UPDATE SKIP LOCKED."""
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'processing', started_at = NOW(), attempt = attempt + 1
                WHERE id IN (
                    SELECT id FROM background_jobs
                    WHERE status = 'pending' AND scheduled_for <= NOW()
                    ORDER BY scheduled_for, priority DESC, id
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id, user_id, job_type, payload, attempt, max_retries
                """,
                (self.config.batch_size,),
            )
            return await cur.fetchall()

    def _job_payload(self, job: dict[str, Any]) -> dict[str, Any]:
        """Job payload with deployment defaults filled in."""
        payload = dict(job["payload"] or {})
        if job.get("user_id") is not None:
            payload.setdefault("user_id", str(job["user_id"]))
        payload.setdefault("baseline_window", self.config.baseline_window)
        payload.setdefault("dedup_batch_size", self.config.dedup_batch_size)
        payload.setdefault("statement_timeout_ms", self.config.statement_timeout_ms)
        payload.setdefault("recovery_model", self.config.recovery_model)
        return payload

    async def _process_job(
        self, conn: psycopg.AsyncConnection[Any], job: dict[str, Any]
    ) -> None:
        """Process a single job in its own transaction, unless the handler commits its own work."""
        job_id = job["id"]
        job_type = job["job_type"]

        handler = get_handler(job_type)
        if handler is None:
            logger.warning("No handler for job_type=%s (job_id=%d)", job_type, job_id)
            await self._fail_job(conn, job_id, f"No handler for job_type={job_type}")
            return

        t0 = time.monotonic()
        try:
            async with asyncio.timeout(self.config.job_timeout_seconds):
                if commits_own_work(job_type):
                    # Work already committed survives a later failure
                    await handler(conn, self._job_payload(job))
                    async with conn.transaction():
                        await self._complete_job(conn, job_id)
                else:
                    # Handler + job completion in one transaction
                    async with conn.transaction():
                        await set_statement_timeout(conn, self.config.statement_timeout_ms)
                        await handler(conn, self._job_payload(job))
                        await self._complete_job(conn, job_id)
            duration_ms = (time.monotonic() - t0) * 1000
            record_handler_invocation(handler.__name__, duration_ms, success=True)
            record_job_completed()
            logger.info(
                "Job %d completed (type=%s, %.0fms)",
                job_id,
                job_type,
                duration_ms,
                extra=log_extra(job_type=job_type, duration_ms=round(duration_ms, 1)),
            )

        except Exception as exc:
            # conn.transaction() already rolled back
            duration_ms = (time.monotonic() - t0) * 1000
            record_handler_invocation(handler.__name__, duration_ms, success=False)
            logger.exception("Job %d failed (type=%s)", job_id, job_type)

            attempt = job["attempt"]
            max_retries = job["max_retries"]

            # Bad input will not get better on retry.
            if isinstance(exc, HealthCoreError) and is_caller_fault(exc.code):
                await self._dead_job(conn, job_id, f"{exc.code}: {exc.message}")
            elif attempt >= max_retries:
                await self._dead_job(conn, job_id, str(exc) or type(exc).__name__)
            else:
                record_job_failed()
                await self._retry_job(conn, job_id, attempt, str(exc) or type(exc).__name__)

    async def _complete_job(self, conn: psycopg.AsyncConnection[Any], job_id: int) -> None:
        await conn.execute(
            """
            UPDATE background_jobs
            SET status = 'completed', completed_at = NOW()
            WHERE id = %s
            """,
            (job_id,),
        )

    async def _fail_job(
        self, conn: psycopg.AsyncConnection[Any], job_id: int, error: str
    ) -> None:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'dead', error_message = %s, completed_at = NOW()
                WHERE id = %s
                """,
                (error, job_id),
            )
        await conn.commit()

    async def _dead_job(
        self, conn: psycopg.AsyncConnection[Any], job_id: int, error: str
    ) -> None:
        record_job_dead()
        logger.error("Job %d is dead: %s", job_id, error)
        await self._fail_job(conn, job_id, error)

    async def _retry_job(
        self,
        conn: psycopg.AsyncConnection[Any],
        job_id: int,
        attempt: int,
        error: str,
    ) -> None:
        backoff_seconds = 2**attempt
        logger.info("Job %d retrying in %ds (attempt=%d)", job_id, backoff_seconds, attempt)
        async with conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'pending',
                    error_message = %s,
                    scheduled_for = NOW() + make_interval(secs => %s)
                WHERE id = %s
                """,
                (error, float(backoff_seconds), job_id),
            )
        await conn.commit()
