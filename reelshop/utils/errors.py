"""Custom exception classes for Reelshop."""


class ReelshopError(Exception):
    """Base exception for all application errors."""

    pass


class JobStoreError(ReelshopError):
    """Errors from the job record store."""

    pass


class JobNotFoundError(JobStoreError):
    """No job exists for the given id."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class DuplicateJobError(JobStoreError):
    """A job with the same id already exists."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job already exists: {job_id}")


class InvalidTransitionError(JobStoreError):
    """The status machine does not allow this transition."""

    def __init__(self, job_id: str, current: str, target: str) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id}: cannot move from {current} to {target}")


class StaleTransitionError(JobStoreError):
    """The job is no longer in one of the expected previous statuses."""

    def __init__(self, job_id: str, current: str, expected: list[str]) -> None:
        self.job_id = job_id
        self.current = current
        self.expected = expected
        super().__init__(
            f"Job {job_id}: status is {current}, expected one of {', '.join(expected)}"
        )


class ConcurrentModificationError(JobStoreError):
    """The job document kept changing underneath a write."""

    pass


class QueueError(ReelshopError):
    """Errors from the queue dispatcher."""

    pass


class QueuePublishError(QueueError):
    """The push-queue service rejected a publish request."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"QStash error {status_code}: {message}")


class SignatureError(QueueError):
    """An inbound queue callback carried a missing or invalid signature."""

    pass


class ModelRouterError(ReelshopError):
    """Errors from the model router."""

    pass


class UnknownTaskError(ModelRouterError):
    """No model is routed for the requested task."""

    pass


class CapabilityError(ModelRouterError):
    """The routed model cannot serve the requested call."""

    pass


class ProcessorError(ReelshopError):
    """Errors from the AI processing stages."""

    pass


class MediaError(ReelshopError):
    """Source media is missing or could not be decoded."""

    pass


class UnknownActionError(ReelshopError):
    """A dispatch payload named an action the worker does not handle."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Unknown action: {action}")


class StoreCreationError(ReelshopError):
    """The storefront entry could not be written."""

    pass


class MatchingError(ReelshopError):
    """A product could not be matched against shopping listings."""

    pass
