class QueueCtlError(Exception):
    """Base exception for queuectl."""

    pass


class ValidationError(QueueCtlError):
    """Bad enqueue input, unknown config key or invalid argument."""

    pass


class StoreIOError(QueueCtlError):
    """The persisted job collection could not be read or written."""

    pass


class InvalidTransition(QueueCtlError):
    """A job was asked to move along an edge the state machine does not have."""

    pass


class ExecutionFailure(QueueCtlError):
    """An external command exited non-zero or could not be started."""

    def __init__(self, detail: str, returncode: int = None):
        super().__init__(detail)
        self.detail = detail
        self.returncode = returncode


class ProcessSignalError(QueueCtlError):
    """A tracked worker process could not be signalled."""

    def __init__(self, pid: int, reason: str):
        super().__init__(f"Cannot signal worker pid {pid}: {reason}")
        self.pid = pid
        self.reason = reason
