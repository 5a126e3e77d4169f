from __future__ import annotations


class SnapvaultError(RuntimeError):
    pass


class DiskWriteError(SnapvaultError):
    pass


class ResourceExhaustedError(SnapvaultError):
    pass


class OverlappingRunError(SnapvaultError):
    """Another invocation of the same job is active; the current one must stop."""


class AbortRequested(SnapvaultError):
    pass


class InvocationYield(SnapvaultError):
    """The invocation spent its time budget after a checkpoint; a later resumption continues."""


class RestoreFatalError(SnapvaultError):
    pass


class RetryableDatabaseError(SnapvaultError):
    pass


class DatabaseConnectionLost(RetryableDatabaseError):
    pass
