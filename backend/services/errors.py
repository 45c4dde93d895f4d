"""
Pipeline exception hierarchy

Non-fatal errors are absorbed inside a stage; everything else reaches the
job worker boundary, marks the job failed and is re-raised to the queue.
"""


class PipelineError(Exception):
    """Base class for analysis pipeline errors"""


class JobNotFound(PipelineError):
    """No analysis record exists for the job id"""

    def __init__(self, job_id: str):
        super().__init__(f"Analysis {job_id} not found")
        self.job_id = job_id


class DetectorUnavailable(PipelineError):
    """Secondary detector could not be reached (non-fatal)"""


class MalformedResponse(PipelineError):
    """A capability answered with something that does not fit its schema (non-fatal)"""


class InvalidTransition(PipelineError):
    """Progress state machine was asked for an illegal stage change"""


class StagePersistenceFailure(PipelineError):
    """Writing a progress snapshot or the final result failed"""


class QueueError(PipelineError):
    """Queue refused an operation (e.g. removing an active job)"""
