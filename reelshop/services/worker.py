"""Worker orchestrator: drives one job through the processing stages."""

import logging
from typing import Optional, Sequence

from reelshop.config import Settings, get_settings
from reelshop.models.analysis import ProcessedVideo
from reelshop.models.job import IN_FLIGHT_STATUSES, JobStatus, VideoJob
from reelshop.models.queue import PROCESS_VIDEO, DispatchPayload, WorkerResult
from reelshop.services.job_store import JobStore
from reelshop.services.media import MediaSource
from reelshop.services.model_registry import ai_readiness
from reelshop.services.model_router import CostLedger
from reelshop.services.processor import VideoProcessor
from reelshop.services.store_creator import StoreCreator
from reelshop.utils.errors import (
    JobStoreError,
    MediaError,
    StaleTransitionError,
    UnknownActionError,
)

logger = logging.getLogger(__name__)

# Statuses a delivery may claim a job from. A queue redelivery never
# reopens a terminal job; the manual retrigger does.
DELIVERY_CLAIM_FROM = frozenset({JobStatus.QUEUED, JobStatus.UPLOADED})
RETRIGGER_CLAIM_FROM = frozenset(
    {JobStatus.QUEUED, JobStatus.UPLOADED, JobStatus.FAILED, JobStatus.COMPLETED}
)


class VideoWorker:
    """
    Consumes dispatch payloads and writes every step back to the job store.

    Stage exceptions never escape ``process``: AI failures return the job to
    ``uploaded`` so it can be retried, anything else marks it ``failed``.
    """

    def __init__(
        self,
        store: JobStore,
        processor: Optional[VideoProcessor] = None,
        media: Optional[MediaSource] = None,
        store_creator: Optional[StoreCreator] = None,
        missing_ai_config: Sequence[str] = (),
    ) -> None:
        self.store = store
        self.processor = processor
        self.media = media
        self.store_creator = store_creator
        self.missing_ai_config = list(missing_ai_config)

    @property
    def ai_ready(self) -> bool:
        return self.processor is not None and not self.missing_ai_config

    def _configure_hint(self) -> str:
        return " and ".join(self.missing_ai_config) or "the AI provider keys"

    # ==================== Entry points ====================

    async def process(self, payload: DispatchPayload) -> WorkerResult:
        """Handle one delivery from the queue."""
        job_id = payload.job_id
        logger.info(f"Processing job {job_id} - action: {payload.action}")

        job = await self.store.get(job_id)
        if job is None:
            logger.error(f"Job {job_id} not found")
            return WorkerResult(
                success=False, job_id=job_id, status="error", message="Job not found in store"
            )

        claimed = await self._claim(job, f"Dispatch received: {payload.action}", DELIVERY_CLAIM_FROM)
        if claimed is not None:
            return claimed

        return await self._run(job_id, payload.action, payload.data.key)

    async def trigger(self, job_id: str) -> WorkerResult:
        """Re-run AI processing for an existing job on request."""
        job = await self.store.get(job_id)
        if job is None:
            return WorkerResult(success=False, job_id=job_id, status="error", message="Job not found")

        if not self.ai_ready:
            return WorkerResult(
                success=False,
                job_id=job_id,
                status="error",
                message=f"AI processor not ready. Set {self._configure_hint()}.",
            )

        claimed = await self._claim(job, "Manual retrigger", RETRIGGER_CLAIM_FROM)
        if claimed is not None:
            return claimed

        return await self._run(job_id, PROCESS_VIDEO, job.key)

    # ==================== Claiming ====================

    async def _claim(
        self, job: VideoJob, message: str, claim_from: frozenset
    ) -> Optional[WorkerResult]:
        """Move the job to processing, or explain why this run is a no-op."""
        if job.status not in claim_from:
            return self._noop_result(job)

        try:
            await self.store.transition(
                job.id, JobStatus.PROCESSING, message, expected=claim_from
            )
        except StaleTransitionError:
            latest = await self.store.get(job.id)
            return self._noop_result(latest or job)
        return None

    def _noop_result(self, job: VideoJob) -> WorkerResult:
        if job.status == JobStatus.COMPLETED:
            logger.info(f"Job {job.id} already completed; ignoring duplicate delivery")
            return WorkerResult(
                success=True,
                job_id=job.id,
                status=job.status.value,
                message="Job already completed",
                data=self._result_payload(job),
            )
        if job.status == JobStatus.FAILED:
            return WorkerResult(
                success=False,
                job_id=job.id,
                status=job.status.value,
                message="Job has failed; use the AI trigger endpoint to retry",
                error=job.error,
            )
        if job.status in IN_FLIGHT_STATUSES:
            logger.info(f"Job {job.id} is already {job.status.value}; ignoring duplicate delivery")
            return WorkerResult(
                success=True,
                job_id=job.id,
                status=job.status.value,
                message=f"Job is already {job.status.value}",
            )
        return WorkerResult(
            success=False,
            job_id=job.id,
            status=job.status.value,
            message=f"Job cannot be processed from status {job.status.value}",
        )

    @staticmethod
    def _result_payload(job: VideoJob) -> Optional[dict]:
        if job.analysis is None:
            return None
        return ProcessedVideo(
            transcription=job.transcription or "", analysis=job.analysis
        ).model_dump(mode="json")

    # ==================== Stages ====================

    async def _run(self, job_id: str, action: str, key: str) -> WorkerResult:
        try:
            if action != PROCESS_VIDEO:
                raise UnknownActionError(action)
            return await self._process_video(job_id, key)
        except StaleTransitionError as e:
            logger.warning(f"Job {job_id} moved underneath this run: {e}")
            latest = await self.store.get(job_id)
            return WorkerResult(
                success=False,
                job_id=job_id,
                status=latest.status.value if latest else "error",
                message=f"Job changed during processing: {e}",
            )
        except Exception as e:
            logger.exception(f"Job {job_id} failed: {e}")
            await self._mark_failed(job_id, str(e))
            return WorkerResult(
                success=False, job_id=job_id, status="failed", message=str(e), error=str(e)
            )

    async def _mark_failed(self, job_id: str, error: str) -> None:
        try:
            await self.store.transition(job_id, JobStatus.FAILED, error, error=error)
        except JobStoreError as e:
            logger.error(f"Could not mark job {job_id} as failed: {e}")

    async def _process_video(self, job_id: str, key: str) -> WorkerResult:
        job = await self.store.get(job_id)
        if job is None:
            raise MediaError(f"Job {job_id} disappeared during processing")
        if key != job.key:
            raise MediaError(f"Payload key {key} does not match job key {job.key}")

        if self.media is not None and await self.media.head(job.key) is None:
            raise MediaError(f"Source media not found in storage: {job.key}")

        await self.store.transition(
            job_id,
            JobStatus.UPLOADED,
            "Source media confirmed in storage",
            expected={JobStatus.PROCESSING},
        )

        if not self.ai_ready:
            logger.info(f"AI processor not ready for {job_id}: missing {self._configure_hint()}")
            return WorkerResult(
                success=True,
                job_id=job_id,
                status=JobStatus.UPLOADED.value,
                message=f"Video uploaded. Set {self._configure_hint()} to enable AI processing.",
            )

        return await self._run_ai(job)

    async def _run_ai(self, job: VideoJob) -> WorkerResult:
        assert self.processor is not None
        job_id = job.id
        ledger = CostLedger()

        try:
            await self.store.transition(
                job_id, JobStatus.TRANSCRIBING, "Transcribing audio", expected={JobStatus.UPLOADED}
            )
            transcript = await self.processor.transcribe(job.key, ledger)

            await self.store.transition(
                job_id,
                JobStatus.ANALYZING,
                "Analyzing frames and transcript",
                expected={JobStatus.TRANSCRIBING},
                details={"language": transcript.language, "duration": transcript.duration},
            )
            processed = await self.processor.analyze(transcript, ledger)
        except JobStoreError:
            raise
        except Exception as e:
            error = f"AI processing failed: {e}"
            logger.error(f"{error} (job {job_id})")
            await self.store.transition(
                job_id,
                JobStatus.UPLOADED,
                error,
                expected={JobStatus.TRANSCRIBING, JobStatus.ANALYZING},
                error=error,
            )
            return WorkerResult(
                success=False,
                job_id=job_id,
                status=JobStatus.UPLOADED.value,
                message=f"{error}. Video is uploaded and can be retried.",
                error=error,
            )

        analysis = processed.analysis
        await self.store.update(
            job_id,
            metadata={
                **job.metadata.model_dump(),
                "duration": transcript.duration or job.metadata.duration,
                "title": analysis.seo.title,
            },
        )
        await self.store.transition(
            job_id,
            JobStatus.COMPLETED,
            f"Processed: {len(analysis.products)} products",
            expected={JobStatus.ANALYZING},
            result=processed,
            details={"cost": ledger.summary()},
        )

        await self._create_store(job_id, processed)

        return WorkerResult(
            success=True,
            job_id=job_id,
            status=JobStatus.COMPLETED.value,
            message=f"Processed: {len(analysis.products)} products, sentiment: {analysis.sentiment}",
            data=processed.model_dump(mode="json"),
        )

    async def _create_store(self, job_id: str, processed: ProcessedVideo) -> None:
        if self.store_creator is None:
            return
        try:
            store = await self.store_creator.create_from_job(job_id, processed)
            logger.info(f"Auto-created store {store.id} - {store.name}")
        except Exception as e:
            logger.error(f"Failed to create store for job {job_id}: {e}")


def create_video_worker(
    store: JobStore,
    settings: Optional[Settings] = None,
) -> VideoWorker:
    """Wire a worker from application settings."""
    from reelshop.services.media import create_media_source
    from reelshop.services.model_router import create_model_router
    from reelshop.services.processor import create_video_processor
    from reelshop.services.store_creator import create_store_creator

    settings = settings or get_settings()
    media = create_media_source(settings)
    ready, missing = ai_readiness(settings)

    processor = None
    if ready:
        processor = create_video_processor(create_model_router(settings), media, settings)

    return VideoWorker(
        store,
        processor=processor,
        media=media,
        store_creator=create_store_creator(settings),
        missing_ai_config=missing,
    )
