"""Fire-and-forget delivery jobs.

Auth flows enqueue a :class:`Job` and return immediately; a background
worker drains the queue and hands each job to the mail or SMS adapter.
Delivery failures are logged and never reach the request that caused them.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from fixrx.logging import get_logger
from fixrx.service.email import EmailService
from fixrx.service.sms import SmsService

logger = get_logger(__name__)

WELCOME_EMAIL = "welcome_email"
VERIFICATION_EMAIL = "verification_email"
PASSWORD_RESET_EMAIL = "password_reset_email"
SMS = "sms"

JOB_KINDS = frozenset({WELCOME_EMAIL, VERIFICATION_EMAIL, PASSWORD_RESET_EMAIL, SMS})

DEFAULT_MAX_QUEUE_DEPTH = 1000


@dataclass(frozen=True)
class Job:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)


class JobQueue:
    """In-process queue with a single draining worker task."""

    def __init__(
        self,
        email: EmailService,
        sms: SmsService,
        *,
        max_depth: int = DEFAULT_MAX_QUEUE_DEPTH,
    ) -> None:
        self.email = email
        self.sms = sms
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=max_depth)
        # Mirror of queued jobs in FIFO order, for inspection
        self._pending: Deque[Job] = deque()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[bool]]] = {
            WELCOME_EMAIL: self._send_welcome,
            VERIFICATION_EMAIL: self._send_verification,
            PASSWORD_RESET_EMAIL: self._send_password_reset,
            SMS: self._send_sms,
        }

    @property
    def running(self) -> bool:
        return self._running

    def enqueue(self, kind: str, **payload: Any) -> bool:
        """Queue a job without waiting. Returns False if it was dropped."""
        if kind not in JOB_KINDS:
            raise ValueError(f"unknown job kind: {kind}")
        try:
            job = Job(kind, payload)
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.error("job_queue_full", kind=kind, depth=self._queue.qsize())
            return False
        self._pending.append(job)
        logger.debug("job_enqueued", kind=kind, depth=self._queue.qsize())
        return True

    def pending(self) -> List[Job]:
        """Snapshot of jobs not yet picked up by the worker."""
        return list(self._pending)

    async def start(self) -> None:
        if self._running:
            logger.warning("job_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("job_worker_started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("job_worker_stopped", pending=self._queue.qsize())

    async def drain(self) -> int:
        """Run every pending job in the caller's task; returns the count."""
        processed = 0
        while not self._queue.empty():
            job = self._queue.get_nowait()
            self._pending.popleft()
            try:
                await self.run_job(job)
            finally:
                self._queue.task_done()
            processed += 1
        return processed

    async def _run_loop(self) -> None:
        while self._running:
            job = await self._queue.get()
            self._pending.popleft()
            try:
                await self.run_job(job)
            finally:
                self._queue.task_done()

    async def run_job(self, job: Job) -> bool:
        handler = self._handlers[job.kind]
        try:
            delivered = await handler(job.payload)
        except Exception as exc:
            logger.error(
                "job_failed",
                kind=job.kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not delivered:
            logger.warning("job_not_delivered", kind=job.kind)
        return delivered

    async def _send_welcome(self, payload: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(
            self.email.send_welcome,
            payload["to"],
            payload.get("first_name"),
            payload["token"],
        )

    async def _send_verification(self, payload: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(
            self.email.send_email_verification, payload["to"], payload["token"]
        )

    async def _send_password_reset(self, payload: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(
            self.email.send_password_reset, payload["to"], payload["token"]
        )

    async def _send_sms(self, payload: Dict[str, Any]) -> bool:
        return await self.sms.send_verification_code(payload["to"], payload["code"])
