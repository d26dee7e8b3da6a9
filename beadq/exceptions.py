from uuid import UUID


class BeadqError(Exception):
    """Base class for all errors raised by beadq."""


class BrokerUnavailable(BeadqError):
    """The connection to the broker cannot be established or was lost."""


class PayloadValidationError(BeadqError, ValueError):
    """The payload does not match the schema registered for its queue."""


class HandlerError(BeadqError):
    """A stage handler failed while processing a job.

    The original exception is kept in ``cause`` and also chained as
    ``__cause__`` when the error is raised from it.
    """

    def __init__(self, job_id: UUID, cause: BaseException | str) -> None:
        self.job_id = job_id
        self.cause = cause
        super().__init__(str(cause))


class LeaseExpired(HandlerError):
    """The worker holding the lease did not ack or nack it in time."""

    def __init__(self, job_id: UUID, leased_by: str | None = None) -> None:
        message = "Lease expired before the job was acknowledged"
        if leased_by:
            message = f"{message} (leased by {leased_by})"
        self.leased_by = leased_by
        super().__init__(job_id, message)


class TerminalFailure(BeadqError):
    """The job exhausted its attempts and was dead-lettered."""

    def __init__(
        self,
        job_id: UUID,
        queue: str,
        attempt: int,
        error: str | None,
    ) -> None:
        self.job_id = job_id
        self.queue = queue
        self.attempt = attempt
        self.error = error
        super().__init__(
            f"Job {job_id} in queue {queue!r} failed after {attempt} "
            f"attempt(s): {error}"
        )
