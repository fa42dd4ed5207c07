"""
Custom exceptions for transcode_queue.

Per-job errors are converted into JobFailed messages at the worker boundary;
these types let callers tell the failure categories apart.
"""


class TranscodeQueueError(Exception):
    """Base exception for transcode_queue errors"""
    def __init__(self, message, command=None, output=None):
        self.message = message
        self.command = command
        self.output = output
        super().__init__(self.message)


class InvalidTransitionError(TranscodeQueueError):
    """Raised when a job is moved to a status its current status cannot reach."""
    def __init__(self, job_id, current, requested):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"Job {job_id}: invalid transition {current.value} -> {requested.value}")


class CalibrationError(TranscodeQueueError): pass
class CalibrationPreconditionError(CalibrationError): pass
class CalibrationStepError(CalibrationError): pass
class CalibrationCancelledError(CalibrationError): pass
class ProbeError(TranscodeQueueError): pass
class ScoreEvaluationError(TranscodeQueueError): pass
class WorkerPoolFullError(TranscodeQueueError): pass
class QueueStateError(TranscodeQueueError): pass
