"""Job record store with versioned, status-checked writes."""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Collection, Dict, List, Optional

from reelshop.config import Settings, get_settings
from reelshop.models.analysis import ProcessedVideo
from reelshop.models.job import (
    JobLogEntry,
    JobStatus,
    VideoJob,
    can_transition,
    utc_now,
)
from reelshop.utils.errors import (
    ConcurrentModificationError,
    DuplicateJobError,
    InvalidTransitionError,
    JobNotFoundError,
    JobStoreError,
    StaleTransitionError,
)

logger = logging.getLogger(__name__)

# Fields owned by transition() and the store itself.
_PROTECTED_FIELDS = frozenset(
    {"id", "status", "log", "version", "created_at", "updated_at", "transcription", "analysis"}
)


class JobStore(ABC):
    """
    Keyed store of video jobs.

    Every write is a whole-document replace guarded by the document's
    ``version``; a lost race is retried against a fresh read up to
    ``max_write_attempts`` times. Backends only implement the primitives.
    """

    max_write_attempts: int = 5

    # ==================== Backend primitives ====================

    @abstractmethod
    async def _read(self, job_id: str) -> Optional[VideoJob]:
        ...

    @abstractmethod
    async def _read_all(self, status: Optional[JobStatus] = None) -> List[VideoJob]:
        ...

    @abstractmethod
    async def _insert(self, job: VideoJob) -> bool:
        """Insert a new document. Returns False if the id is taken."""

    @abstractmethod
    async def _replace(self, job: VideoJob, expected_version: int) -> bool:
        """Replace a document only if its stored version is still expected_version."""

    @abstractmethod
    async def _remove(self, job_id: str) -> bool:
        ...

    # ==================== Public API ====================

    async def create(self, job: VideoJob) -> VideoJob:
        """
        Persist a new job.

        Raises:
            DuplicateJobError: If a job with the same id exists
        """
        now = utc_now()
        data = job.model_dump()
        data.update(created_at=now, updated_at=now, version=1)
        if not data["log"]:
            data["log"] = [
                JobLogEntry(timestamp=now, status=job.status, message="Job created").model_dump()
            ]
        created = VideoJob.model_validate(data)

        if not await self._insert(created):
            raise DuplicateJobError(job.id)

        logger.info(f"Created job {created.id} ({created.status.value})")
        return created

    async def get(self, job_id: str) -> Optional[VideoJob]:
        return await self._read(job_id)

    async def update(self, job_id: str, **fields: Any) -> VideoJob:
        """
        Partially update descriptive fields of a job.

        Status, log and results can only change through transition().
        """
        protected = _PROTECTED_FIELDS.intersection(fields)
        if protected:
            raise ValueError(f"Use transition() to change: {', '.join(sorted(protected))}")

        def apply(job: VideoJob) -> VideoJob:
            data = job.model_dump()
            data.update(fields)
            return VideoJob.model_validate(data)

        return await self._mutate(job_id, apply)

    async def transition(
        self,
        job_id: str,
        status: JobStatus,
        message: str,
        *,
        expected: Optional[Collection[JobStatus]] = None,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        result: Optional[ProcessedVideo] = None,
    ) -> VideoJob:
        """
        Move a job to a new status and append the matching log entry.

        Args:
            job_id: Job to move
            status: Target status
            message: Log message for this step
            expected: If given, the job must currently be in one of these statuses
            error: Error text to record on the job
            details: Extra structured context for the log entry
            result: Processing result, only accepted with COMPLETED

        Returns:
            The stored job after the transition

        Raises:
            JobNotFoundError: Unknown job id
            StaleTransitionError: The job is no longer in an expected status
            InvalidTransitionError: The status machine forbids the move
        """
        if result is not None and status != JobStatus.COMPLETED:
            raise ValueError("A processing result can only be stored on completion")

        def apply(job: VideoJob) -> VideoJob:
            if expected is not None and job.status not in expected:
                raise StaleTransitionError(
                    job_id, job.status.value, sorted(s.value for s in expected)
                )
            if not can_transition(job.status, status):
                raise InvalidTransitionError(job_id, job.status.value, status.value)

            data = job.model_dump()
            data["status"] = status
            data["log"].append(
                JobLogEntry(status=status, message=message, details=details).model_dump()
            )
            if job.status == JobStatus.COMPLETED:
                data["transcription"] = None
                data["analysis"] = None
            if status == JobStatus.COMPLETED:
                data["error"] = None
            elif error is not None:
                data["error"] = error
            if result is not None:
                data["transcription"] = result.transcription
                data["analysis"] = result.analysis.model_dump()
            return VideoJob.model_validate(data)

        updated = await self._mutate(job_id, apply)
        logger.info(f"Job {job_id} -> {status.value}: {message}")
        return updated

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[VideoJob]:
        """List jobs, newest first, optionally filtered by status."""
        jobs = await self._read_all(status)
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    async def stats(self) -> Dict[str, int]:
        """Count jobs per primary status, including statuses with no jobs."""
        counts = Counter(job.status for job in await self._read_all())
        result = {status.value: counts.get(status, 0) for status in JobStatus}
        result["total"] = sum(counts.values())
        return result

    async def delete(self, job_id: str) -> bool:
        """Administrative delete. Nothing in the pipeline calls this."""
        deleted = await self._remove(job_id)
        if deleted:
            logger.info(f"Deleted job {job_id}")
        return deleted

    async def _mutate(self, job_id: str, change: Callable[[VideoJob], VideoJob]) -> VideoJob:
        for attempt in range(self.max_write_attempts):
            current = await self._read(job_id)
            if current is None:
                raise JobNotFoundError(job_id)

            updated = change(current)
            updated.version = current.version + 1
            if len(updated.log) > len(current.log):
                updated.updated_at = updated.log[-1].timestamp
            else:
                updated.updated_at = utc_now()

            if await self._replace(updated, current.version):
                return updated

            logger.warning(
                f"Job {job_id} changed during write (attempt {attempt + 1}/"
                f"{self.max_write_attempts}), retrying"
            )

        raise ConcurrentModificationError(
            f"Job {job_id}: gave up after {self.max_write_attempts} conflicting writes"
        )


class JsonFileJobStore(JobStore):
    """Stores all jobs in one JSON document on local disk."""

    def __init__(self, data_file: str = "data/jobs.json") -> None:
        self.data_file = data_file
        self._lock = asyncio.Lock()

    def _load_data(self) -> Dict[str, Dict[str, Any]]:
        """Load the jobs document from disk."""
        if not os.path.exists(self.data_file):
            return {}
        try:
            with open(self.data_file, "r") as f:
                return json.load(f).get("jobs", {})
        except (OSError, ValueError) as e:
            raise JobStoreError(f"Cannot read {self.data_file}: {e}")

    def _save_data(self, jobs: Dict[str, Dict[str, Any]]) -> None:
        """Write the jobs document atomically."""
        directory = os.path.dirname(self.data_file) or "."
        os.makedirs(directory, exist_ok=True)
        data = {"jobs": jobs, "last_updated": datetime.now().isoformat()}

        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.data_file)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    async def _read(self, job_id: str) -> Optional[VideoJob]:
        async with self._lock:
            raw = self._load_data().get(job_id)
        return VideoJob.model_validate(raw) if raw else None

    async def _read_all(self, status: Optional[JobStatus] = None) -> List[VideoJob]:
        async with self._lock:
            jobs = [VideoJob.model_validate(raw) for raw in self._load_data().values()]
        if status is not None:
            jobs = [job for job in jobs if job.status == status]
        return jobs

    async def _insert(self, job: VideoJob) -> bool:
        async with self._lock:
            jobs = self._load_data()
            if job.id in jobs:
                return False
            jobs[job.id] = job.model_dump(mode="json")
            self._save_data(jobs)
            return True

    async def _replace(self, job: VideoJob, expected_version: int) -> bool:
        async with self._lock:
            jobs = self._load_data()
            stored = jobs.get(job.id)
            if stored is None:
                raise JobNotFoundError(job.id)
            if stored.get("version", 0) != expected_version:
                return False
            jobs[job.id] = job.model_dump(mode="json")
            self._save_data(jobs)
            return True

    async def _remove(self, job_id: str) -> bool:
        async with self._lock:
            jobs = self._load_data()
            if jobs.pop(job_id, None) is None:
                return False
            self._save_data(jobs)
            return True


class SupabaseJobStore(JobStore):
    """Stores jobs as JSON documents in a Supabase table."""

    def __init__(self, supabase_client: Any, table: str = "jobs") -> None:
        """
        Initialize the store.

        Args:
            supabase_client: Supabase client instance
            table: Table with job_id, status, version, document and timestamp columns
        """
        self.supabase = supabase_client
        self.table = table

    def _row(self, job: VideoJob) -> Dict[str, Any]:
        return {
            "job_id": job.id,
            "status": job.status.value,
            "version": job.version,
            "document": job.model_dump(mode="json"),
            "created_at": job.created_at.isoformat(),
            "updated_at": job.updated_at.isoformat(),
        }

    async def _read(self, job_id: str) -> Optional[VideoJob]:
        try:
            result = self.supabase.table(self.table).select("*").eq("job_id", job_id).execute()
        except Exception as e:
            logger.error(f"Failed to get job {job_id}: {e}")
            raise JobStoreError(f"Failed to get job {job_id}: {e}")

        if not result.data:
            return None
        return VideoJob.model_validate(result.data[0]["document"])

    async def _read_all(self, status: Optional[JobStatus] = None) -> List[VideoJob]:
        try:
            query = self.supabase.table(self.table).select("*")
            if status is not None:
                query = query.eq("status", status.value)
            result = query.execute()
        except Exception as e:
            logger.error(f"Failed to list jobs: {e}")
            raise JobStoreError(f"Failed to list jobs: {e}")

        return [VideoJob.model_validate(row["document"]) for row in result.data or []]

    async def _insert(self, job: VideoJob) -> bool:
        if await self._read(job.id) is not None:
            return False
        try:
            result = self.supabase.table(self.table).insert(self._row(job)).execute()
        except Exception as e:
            raise JobStoreError(f"Failed to create job {job.id}: {e}")

        if not result.data:
            raise JobStoreError(f"Failed to insert job {job.id} into database")
        return True

    async def _replace(self, job: VideoJob, expected_version: int) -> bool:
        try:
            result = (
                self.supabase.table(self.table)
                .update(self._row(job))
                .eq("job_id", job.id)
                .eq("version", expected_version)
                .execute()
            )
        except Exception as e:
            raise JobStoreError(f"Failed to update job {job.id}: {e}")

        # No row matched the version filter: someone else wrote first.
        return bool(result.data)

    async def _remove(self, job_id: str) -> bool:
        try:
            result = self.supabase.table(self.table).delete().eq("job_id", job_id).execute()
        except Exception as e:
            logger.error(f"Failed to delete job {job_id}: {e}")
            raise JobStoreError(f"Failed to delete job {job_id}: {e}")
        return bool(result.data)


def create_job_store(settings: Optional[Settings] = None) -> JobStore:
    """
    Create the job store for the current environment.

    Uses Supabase when credentials are configured, otherwise a JSON file
    under ``settings.data_dir``.
    """
    settings = settings or get_settings()

    if settings.supabase_configured:
        from supabase import create_client

        supabase_client = create_client(settings.supabase_url, settings.supabase_key)
        return SupabaseJobStore(supabase_client, table=settings.jobs_table)

    return JsonFileJobStore(os.path.join(settings.data_dir, "jobs.json"))
