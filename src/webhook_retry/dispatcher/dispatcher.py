import asyncio
import json
from datetime import timedelta
from typing import Dict, List, Optional

import aiohttp
from loguru import logger

from webhook_retry.common.backoff import BackoffPolicy
from webhook_retry.common.metrics import measure_time, metrics
from webhook_retry.common.models import BatchResult, DeliveryResult, WebhookTask
from webhook_retry.common.store import TaskStore


TASK_ID_HEADER = "X-Webhook-ID"
ATTEMPT_HEADER = "X-Webhook-Attempt"

# Outcome labels returned by process_task
COMPLETED = "completed"
RETRIED = "retried"
FAILED = "failed"
SKIPPED = "skipped"


class WebhookDispatcher:
    """Delivers due webhook tasks and applies the backoff policy.

    ``attempts`` on a task counts every delivery attempt, the successful one
    included. A task fails permanently on its ``max_attempts``-th failed
    delivery, so a task with ``max_attempts=3`` is posted at most three times.
    """

    def __init__(
        self,
        store: TaskStore,
        backoff: Optional[BackoffPolicy] = None,
        headers: Dict[str, str] = None,
        timeout: float = 10,
        batch_size: int = 100,
        claim_ttl: float = 60,
    ):
        self.store = store
        self.backoff = backoff or BackoffPolicy()
        self.headers = headers or {}
        self.timeout = timeout
        self.batch_size = batch_size
        self.claim_ttl = claim_ttl

    def _build_headers(self, task: WebhookTask) -> Dict[str, str]:
        headers = self.headers.copy()
        headers["Content-Type"] = "application/json"
        headers[TASK_ID_HEADER] = task.id
        headers[ATTEMPT_HEADER] = str(task.next_attempt_number)
        return headers

    @measure_time(metrics.delivery_latency)
    async def deliver(
        self, task: WebhookTask, session: aiohttp.ClientSession
    ) -> DeliveryResult:
        """POST the task payload to its target. Never raises for HTTP failures."""
        attempt = task.next_attempt_number

        try:
            body = json.dumps(task.payload)
            async with session.post(
                task.target_url,
                data=body,
                headers=self._build_headers(task),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if 200 <= response.status < 300:
                    metrics.delivery_total.labels(outcome="success").inc()
                    logger.info(
                        f"Webhook {task.id} delivered to {task.target_url} "
                        f"(status={response.status}, attempt={attempt})"
                    )
                    return DeliveryResult(
                        task_id=task.id,
                        attempt=attempt,
                        success=True,
                        status_code=response.status,
                    )

                response_text = await response.text()
                metrics.delivery_total.labels(outcome="failure").inc()
                metrics.delivery_errors.labels(status_code=str(response.status)).inc()
                logger.warning(
                    f"Webhook {task.id} rejected by {task.target_url} "
                    f"(status={response.status}, attempt={attempt}): {response_text[:200]}"
                )
                return DeliveryResult(
                    task_id=task.id,
                    attempt=attempt,
                    success=False,
                    status_code=response.status,
                    error=f"HTTP {response.status}",
                )
        except asyncio.TimeoutError:
            error = f"Timed out after {self.timeout}s"
        except Exception as e:
            error = f"{type(e).__name__}: {e}"

        metrics.delivery_total.labels(outcome="failure").inc()
        metrics.delivery_errors.labels(status_code="error").inc()
        logger.warning(
            f"Error delivering webhook {task.id} to {task.target_url} "
            f"(attempt={attempt}): {error}"
        )
        return DeliveryResult(task_id=task.id, attempt=attempt, success=False, error=error)

    async def process_task(self, task: WebhookTask, session: aiohttp.ClientSession) -> str:
        """Deliver one claimed task and record the outcome in the store."""
        result = await self.deliver(task, session)
        attempt = result.attempt

        if result.success:
            if await self.store.mark_completed(task.id, attempts=attempt):
                return COMPLETED
            return SKIPPED

        if attempt >= task.max_attempts:
            reason = f"Max retry attempts reached ({attempt}/{task.max_attempts}): {result.error}"
            if await self.store.mark_failed_permanently(task.id, reason, attempts=attempt):
                metrics.failed_permanently_total.inc()
                logger.error(f"Webhook {task.id} to {task.target_url} failed permanently: {reason}")
                return FAILED
            return SKIPPED

        delay = self.backoff.delay_for(attempt)
        next_attempt = self.store.clock() + delay
        if await self.store.schedule_retry(task.id, next_attempt, error=result.error):
            metrics.retry_scheduled_total.inc()
            logger.info(
                f"Retrying webhook {task.id} in {delay.total_seconds():g}s "
                f"(attempt {attempt}/{task.max_attempts} failed)"
            )
            return RETRIED
        return SKIPPED

    async def _claim_all(self, tasks: List[WebhookTask]) -> List[WebhookTask]:
        lease = timedelta(seconds=self.claim_ttl)
        claimed = []
        for task in tasks:
            if await self.store.claim(task.id, lease):
                claimed.append(task)
            else:
                metrics.claim_conflicts.inc()
                logger.debug(f"Task {task.id} was claimed by another dispatcher")
        return claimed

    async def _process_claimed(
        self, tasks: List[WebhookTask], session: aiohttp.ClientSession, result: BatchResult
    ) -> BatchResult:
        outcomes = await asyncio.gather(
            *(self.process_task(task, session) for task in tasks),
            return_exceptions=True,
        )

        for task, outcome in zip(tasks, outcomes):
            if isinstance(outcome, BaseException):
                result.errors += 1
                logger.error(f"Error processing webhook task {task.id}: {outcome!r}")
            elif outcome == COMPLETED:
                result.completed += 1
            elif outcome == RETRIED:
                result.retried += 1
            elif outcome == FAILED:
                result.failed += 1
        return result

    @measure_time(metrics.batch_latency, lambda self: {"store": self.store.name})
    async def process_pending_batch(
        self,
        limit: Optional[int] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> BatchResult:
        """Fetch, claim and deliver one batch of due tasks.

        Deliveries run concurrently and the batch returns once every one of
        them has settled. A task that raises is counted in ``errors`` and
        keeps its claim until the lease runs out. ``limit=0`` processes
        nothing.
        """
        limit = self.batch_size if limit is None else limit
        if limit < 0:
            raise ValueError("limit must not be negative")
        tasks = await self.store.fetch_due(limit)
        result = BatchResult(fetched=len(tasks))
        if not tasks:
            metrics.batch_size.observe(0)
            return result

        claimed = await self._claim_all(tasks)
        result.claimed = len(claimed)
        metrics.batch_size.observe(len(claimed))
        if not claimed:
            return result

        logger.debug(f"Dispatching {len(claimed)} webhook tasks")
        if session is None:
            async with aiohttp.ClientSession() as own_session:
                await self._process_claimed(claimed, own_session, result)
        else:
            await self._process_claimed(claimed, session, result)

        logger.info(
            f"Batch processed: {result.completed} completed, {result.retried} retried, "
            f"{result.failed} failed, {result.errors} errors"
        )
        return result

    async def run(self, shutdown_event: asyncio.Event, poll_interval: float = 5):
        """Process batches on a fixed interval until ``shutdown_event`` is set."""
        logger.info(f"Starting webhook dispatcher (poll_interval={poll_interval}s)")

        while not shutdown_event.is_set():
            try:
                result = await self.process_pending_batch()
                # A full batch means more work is probably due right away
                if result.fetched >= self.batch_size:
                    continue
                wait = poll_interval
            except Exception as e:
                logger.error(f"Error in dispatcher loop: {e}")
                wait = poll_interval * 2

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

        logger.info("Dispatcher stopped")
