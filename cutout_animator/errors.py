"""
Error taxonomy for Cutout Animator.

Every failure the animation pipeline can surface has its own class so that
callers can render targeted messages instead of parsing strings.
"""


class AnimationError(Exception):
    """Base class for all animation pipeline errors."""
    pass


class ConfigError(AnimationError):
    """Missing credential or invalid setting, raised before any network call."""
    pass


class UploadError(AnimationError):
    pass


class UploadInitError(UploadError):
    """The upload slot could not be obtained."""
    pass


class UploadTransferError(UploadError):
    """The bytes could not be transferred to the upload slot."""
    pass


class SubmissionError(AnimationError):
    """The generation request was malformed or rejected."""
    pass


class PollTimeoutError(AnimationError):
    """The job did not reach a terminal state within the poll ceiling."""

    def __init__(self, message: str, polls: int = 0):
        super().__init__(message)
        self.polls = polls


class RemoteFailure(AnimationError):
    """The remote service reported the job as failed."""
    pass


class DownloadError(AnimationError):
    """The generated video could not be downloaded."""
    pass


class WorkerError(AnimationError):
    pass


class DecodeError(WorkerError):
    """The returned video could not be decoded into frames."""
    pass


class EncodeError(WorkerError):
    """Keyed frames could not be encoded into animated images."""
    pass


class FrameFormatError(EncodeError):
    """A frame has the wrong shape, channel count or dimensions."""
    pass


class WorkerCrashError(WorkerError):
    """The worker process exited without sending a terminal message."""

    def __init__(self, message: str, returncode=None):
        super().__init__(message)
        self.returncode = returncode
