"""Property-based tests for the job record store and its status machine.

Feature: reelshop
Properties: closed status set, append-only log, compare-and-swap transitions,
result fields only on completed jobs.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from reelshop.models.analysis import ProcessedVideo, VideoAnalysis
from reelshop.models.job import (
    ALLOWED_TRANSITIONS,
    CreatorStatus,
    JobStatus,
    VideoJob,
    can_transition,
)
from reelshop.services.job_store import JobStore, JsonFileJobStore
from reelshop.utils.errors import (
    ConcurrentModificationError,
    DuplicateJobError,
    InvalidTransitionError,
    JobNotFoundError,
    JobStoreError,
    StaleTransitionError,
)

fixture_ok = settings(
    max_examples=100, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture]
)

statuses = st.sampled_from(list(JobStatus))


def new_job(job_id: str = "file-1", **overrides: Any) -> VideoJob:
    fields: Dict[str, Any] = {"id": job_id, "bucket": "reelshop", "key": f"uploads/{job_id}.mp4"}
    fields.update(overrides)
    return VideoJob(**fields)


def processed() -> ProcessedVideo:
    return ProcessedVideo(transcription="hello", analysis=VideoAnalysis(keywords=["hello"]))


async def walk(store: JobStore, targets: List[JobStatus]) -> List[bool]:
    """Attempt each transition in turn; report which were accepted."""
    await store.create(new_job())
    accepted = []
    for target in targets:
        try:
            await store.transition(
                "file-1",
                target,
                f"to {target.value}",
                result=processed() if target == JobStatus.COMPLETED else None,
            )
            accepted.append(True)
        except InvalidTransitionError:
            accepted.append(False)
    return accepted


class TestStatusMachine:
    """
    *For any* sequence of attempted transitions, the stored status SHALL stay in
    the closed status set, SHALL only change along allowed edges, and the log
    SHALL grow by exactly one entry per accepted transition.
    """

    @fixture_ok
    @given(targets=st.lists(statuses, max_size=12))
    def test_random_walk_keeps_log_and_status_consistent(
        self, make_store: Callable[[], JobStore], targets: List[JobStatus]
    ) -> None:
        store = make_store()

        async def run() -> Tuple[List[bool], Optional[VideoJob]]:
            accepted = await walk(store, targets)
            return accepted, await store.get("file-1")

        accepted, job = asyncio.run(run())

        assert job is not None
        assert job.status in set(JobStatus)
        # One "Job created" entry plus one per accepted transition
        assert len(job.log) == 1 + sum(accepted)
        assert job.log[0].message == "Job created"
        assert job.log[-1].status == job.status
        assert job.version == len(job.log)
        for previous, entry in zip(job.log, job.log[1:]):
            assert can_transition(previous.status, entry.status)

    @given(current=statuses, target=statuses)
    @settings(max_examples=100)
    def test_allowed_table_matches_can_transition(self, current: JobStatus, target: JobStatus) -> None:
        assert can_transition(current, target) == (target in ALLOWED_TRANSITIONS[current])

    @given(status=statuses)
    @settings(max_examples=50)
    def test_terminal_statuses_only_reopen_to_processing(self, status: JobStatus) -> None:
        if status.is_terminal:
            assert ALLOWED_TRANSITIONS[status] == frozenset({JobStatus.PROCESSING})
        else:
            assert JobStatus.FAILED in ALLOWED_TRANSITIONS[status]

    def test_creator_status_is_derived(self) -> None:
        assert new_job(status=JobStatus.QUEUED).creator_status == CreatorStatus.FETCHING_SOURCE
        assert new_job(status=JobStatus.PROCESSING).creator_status == CreatorStatus.FETCHING_SOURCE
        assert new_job(status=JobStatus.UPLOADED).creator_status == CreatorStatus.REMOVING_WATERMARK
        assert new_job(status=JobStatus.TRANSCRIBING).creator_status == CreatorStatus.TRANSCRIBING_AUDIO
        assert new_job(status=JobStatus.ANALYZING).creator_status == CreatorStatus.GENERATING_SOHO_VIBE
        assert new_job(status=JobStatus.FAILED).creator_status == CreatorStatus.FAILED


class TestTransitions:
    """Transition rules enforced by the store."""

    @pytest.mark.asyncio
    async def test_invalid_transition_does_not_mutate(self, make_store: Callable[[], JobStore]) -> None:
        store = make_store()
        await store.create(new_job())

        with pytest.raises(InvalidTransitionError):
            await store.transition("file-1", JobStatus.COMPLETED, "skip ahead", result=processed())

        job = await store.get("file-1")
        assert job.status == JobStatus.QUEUED
        assert len(job.log) == 1
        assert job.version == 1

    @pytest.mark.asyncio
    async def test_stale_expected_status_is_rejected(self, make_store: Callable[[], JobStore]) -> None:
        store = make_store()
        await store.create(new_job())
        await store.transition("file-1", JobStatus.PROCESSING, "claimed")

        with pytest.raises(StaleTransitionError) as exc_info:
            await store.transition(
                "file-1", JobStatus.PROCESSING, "claimed again", expected={JobStatus.QUEUED}
            )

        assert exc_info.value.current == "processing"
        assert (await store.get("file-1")).version == 2

    @pytest.mark.asyncio
    async def test_leaving_completed_clears_results(self, make_store: Callable[[], JobStore]) -> None:
        store = make_store()
        await store.create(new_job())
        for status in (JobStatus.PROCESSING, JobStatus.UPLOADED, JobStatus.TRANSCRIBING, JobStatus.ANALYZING):
            await store.transition("file-1", status, status.value)
        done = await store.transition("file-1", JobStatus.COMPLETED, "done", result=processed())
        assert done.transcription == "hello"
        assert done.analysis is not None

        reopened = await store.transition("file-1", JobStatus.PROCESSING, "Manual retrigger")
        assert reopened.transcription is None
        assert reopened.analysis is None

    @pytest.mark.asyncio
    async def test_error_is_recorded_and_cleared_on_completion(self, make_store: Callable[[], JobStore]) -> None:
        store = make_store()
        await store.create(new_job())
        for status in (JobStatus.PROCESSING, JobStatus.UPLOADED, JobStatus.TRANSCRIBING):
            await store.transition("file-1", status, status.value)
        failed = await store.transition(
            "file-1", JobStatus.UPLOADED, "AI processing failed: boom", error="AI processing failed: boom"
        )
        assert failed.error == "AI processing failed: boom"

        await store.transition("file-1", JobStatus.TRANSCRIBING, "again")
        await store.transition("file-1", JobStatus.ANALYZING, "again")
        done = await store.transition("file-1", JobStatus.COMPLETED, "done", result=processed())
        assert done.error is None

    @pytest.mark.asyncio
    async def test_result_only_accepted_with_completed(self, make_store: Callable[[], JobStore]) -> None:
        store = make_store()
        await store.create(new_job())
        with pytest.raises(ValueError):
            await store.transition("file-1", JobStatus.PROCESSING, "x", result=processed())

    @pytest.mark.asyncio
    async def test_unknown_job_raises_not_found(self, make_store: Callable[[], JobStore]) -> None:
        with pytest.raises(JobNotFoundError):
            await make_store().transition("missing", JobStatus.PROCESSING, "x")


class TestStoreOperations:
    @pytest.mark.asyncio
    async def test_duplicate_create_is_rejected(self, make_store: Callable[[], JobStore]) -> None:
        store = make_store()
        await store.create(new_job())
        with pytest.raises(DuplicateJobError):
            await store.create(new_job())

    @pytest.mark.asyncio
    async def test_update_rejects_protected_fields(self, make_store: Callable[[], JobStore]) -> None:
        store = make_store()
        await store.create(new_job())
        with pytest.raises(ValueError):
            await store.update("file-1", status=JobStatus.COMPLETED)

        updated = await store.update("file-1", metadata={"title": "Cardigan haul", "duration": 31.5})
        assert updated.metadata.title == "Cardigan haul"
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_list_is_newest_first_and_stats_cover_every_status(
        self, make_store: Callable[[], JobStore]
    ) -> None:
        store = make_store()
        for i in range(3):
            await store.create(new_job(f"file-{i}"))
            await asyncio.sleep(0.001)
        await store.transition("file-0", JobStatus.FAILED, "gave up", error="gave up")

        jobs = await store.list_jobs()
        assert [j.id for j in jobs] == ["file-2", "file-1", "file-0"]
        assert [j.id for j in await store.list_jobs(JobStatus.FAILED)] == ["file-0"]

        stats = await store.stats()
        assert set(stats) == {s.value for s in JobStatus} | {"total"}
        assert stats["queued"] == 2
        assert stats["failed"] == 1
        assert stats["total"] == 3

    @pytest.mark.asyncio
    async def test_delete(self, make_store: Callable[[], JobStore]) -> None:
        store = make_store()
        await store.create(new_job())
        assert await store.delete("file-1") is True
        assert await store.delete("file-1") is False
        assert await store.get("file-1") is None

    @pytest.mark.asyncio
    async def test_persistent_version_conflict_gives_up(self, make_store: Callable[[], JobStore]) -> None:
        store = make_store()
        await store.create(new_job())

        async def always_conflict(job: VideoJob, expected_version: int) -> bool:
            return False

        store._replace = always_conflict  # type: ignore[method-assign]
        with pytest.raises(ConcurrentModificationError):
            await store.transition("file-1", JobStatus.PROCESSING, "claimed")


class TestJsonFileJobStore:
    @pytest.mark.asyncio
    async def test_round_trip_through_disk(self, tmp_path) -> None:
        path = str(tmp_path / "jobs.json")
        store = JsonFileJobStore(path)
        await store.create(new_job())
        await store.transition("file-1", JobStatus.PROCESSING, "claimed")

        reopened = JsonFileJobStore(path)
        job = await reopened.get("file-1")
        assert job.status == JobStatus.PROCESSING
        assert [e.message for e in job.log] == ["Job created", "claimed"]

        with open(path) as f:
            document = json.load(f)
        assert set(document) == {"jobs", "last_updated"}
        assert document["jobs"]["file-1"]["creator_status"] == "fetching_source"

    @pytest.mark.asyncio
    async def test_corrupt_file_raises_store_error(self, tmp_path) -> None:
        path = tmp_path / "jobs.json"
        path.write_text("{not json")
        with pytest.raises(JobStoreError):
            await JsonFileJobStore(str(path)).get("file-1")

    @pytest.mark.asyncio
    async def test_concurrent_transitions_claim_once(self, tmp_path) -> None:
        store = JsonFileJobStore(str(tmp_path / "jobs.json"))
        await store.create(new_job())

        async def claim() -> bool:
            try:
                await store.transition(
                    "file-1", JobStatus.PROCESSING, "claimed", expected={JobStatus.QUEUED}
                )
                return True
            except StaleTransitionError:
                return False

        results = await asyncio.gather(*(claim() for _ in range(5)))
        assert results.count(True) == 1
        assert len((await store.get("file-1")).log) == 2
