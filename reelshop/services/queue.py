"""Queue dispatcher: creates jobs and hands them to a transport."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from reelshop.config import Settings, get_settings
from reelshop.models.job import JobStatus, VideoJob
from reelshop.models.queue import DispatchData, DispatchPayload, EnqueueRequest, WorkerResult
from reelshop.services.job_store import JobStore
from reelshop.services.qstash import QStashClient
from reelshop.utils.errors import JobStoreError

logger = logging.getLogger(__name__)

WorkerHandler = Callable[[DispatchPayload], Awaitable[WorkerResult]]


class Transport(ABC):
    """Carries a dispatch payload to the worker ingress."""

    mode: str = ""

    @abstractmethod
    async def dispatch(self, payload: DispatchPayload) -> None:
        ...


class QStashTransport(Transport):
    """At-least-once delivery through QStash to the worker callback URL."""

    mode = "qstash"

    def __init__(self, client: QStashClient, worker_url: str) -> None:
        self.client = client
        self.worker_url = worker_url

    async def dispatch(self, payload: DispatchPayload) -> None:
        await self.client.publish_json(self.worker_url, payload.to_wire())
        logger.info(f"Job {payload.job_id} enqueued via QStash")


class LocalTransport(Transport):
    """
    Runs the worker in this process after a short delay.

    ``dispatch`` returns before the worker starts. There is no redelivery in
    this mode, so an exception escaping the worker is recorded on the job as
    ``failed``.
    """

    mode = "local"

    def __init__(self, handler: WorkerHandler, store: JobStore, delay: float = 0.1) -> None:
        self.handler = handler
        self.store = store
        self.delay = delay
        self._tasks: Set["asyncio.Task[None]"] = set()

    async def dispatch(self, payload: DispatchPayload) -> None:
        task = asyncio.create_task(self._run(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"Job {payload.job_id} queued locally")

    async def _run(self, payload: DispatchPayload) -> None:
        await asyncio.sleep(self.delay)
        job_id = payload.job_id

        try:
            result = await self.handler(payload)
        except Exception as e:
            logger.exception(f"Local job {job_id} failed: {e}")
            try:
                await self.store.transition(
                    job_id, JobStatus.FAILED, f"Local processing failed: {e}", error=str(e)
                )
            except JobStoreError as store_error:
                logger.error(f"Could not mark job {job_id} as failed: {store_error}")
            return

        if result.success:
            logger.info(f"Local job {job_id} finished: {result.status} - {result.message}")
        else:
            logger.warning(f"Local job {job_id} unsuccessful: {result.status} - {result.message}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled local run to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class VideoQueue:
    """Creates queued jobs and dispatches them."""

    def __init__(
        self,
        store: JobStore,
        transport: Transport,
        worker_url: str,
        url_template: str = "https://{bucket}.sgp1.digitaloceanspaces.com/{key}",
        distributed_configured: bool = False,
    ) -> None:
        self.store = store
        self.transport = transport
        self.worker_url = worker_url
        self.url_template = url_template
        self.distributed_configured = distributed_configured

    async def enqueue(self, request: EnqueueRequest) -> VideoJob:
        """
        Persist a queued job and dispatch it.

        Returns:
            The job as created, in status ``queued``

        Raises:
            DuplicateJobError: If a job already exists for this file id
            Exception: Whatever the transport raised; the job is marked failed first
        """
        job = await self.store.create(
            VideoJob(
                id=request.file_id,
                status=JobStatus.QUEUED,
                source=request.source,
                platform=request.platform,
                original_url=request.original_url,
                bucket=request.bucket,
                key=request.key,
                endpoint=self.url_template.format(bucket=request.bucket, key=request.key),
                size=request.size,
                content_type=request.content_type,
            )
        )

        payload = DispatchPayload(
            job_id=job.id,
            data=DispatchData(
                file_id=request.file_id,
                key=request.key,
                bucket=request.bucket,
                source=request.source,
                platform=request.platform,
                original_url=request.original_url,
                size=request.size,
            ),
        )

        try:
            await self.transport.dispatch(payload)
        except Exception as e:
            logger.error(f"Failed to enqueue job {job.id}: {e}")
            try:
                await self.store.transition(
                    job.id,
                    JobStatus.FAILED,
                    "Failed to enqueue job",
                    error=f"Failed to enqueue job: {e}",
                )
            except JobStoreError as store_error:
                logger.error(f"Could not mark job {job.id} as failed: {store_error}")
            raise

        return job

    def queue_info(self) -> Dict[str, Any]:
        return {
            "mode": self.transport.mode,
            "worker_url": self.worker_url,
            "configured": self.distributed_configured,
        }


def create_video_queue(
    store: JobStore,
    handler: WorkerHandler,
    settings: Optional[Settings] = None,
) -> VideoQueue:
    """
    Create the dispatcher for the current environment.

    QStash is used only in production with a token set; otherwise jobs run
    in-process through ``handler``.
    """
    settings = settings or get_settings()

    transport: Transport
    if settings.qstash_configured and settings.is_production:
        client = QStashClient(
            settings.qstash_token,
            base_url=settings.qstash_url,
            retries=settings.qstash_retries,
            max_attempts=settings.max_retry_attempts,
            base_delay=settings.base_delay_seconds,
        )
        transport = QStashTransport(client, settings.worker_url)
    else:
        transport = LocalTransport(handler, store, delay=settings.local_queue_delay_seconds)

    return VideoQueue(
        store,
        transport,
        worker_url=settings.worker_url,
        url_template=settings.storage_url_template,
        distributed_configured=settings.qstash_configured,
    )
