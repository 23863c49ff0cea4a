"""Error taxonomy shared by the lifecycle manager, the actuator and the loops.

Client-level failures (``RequestFailure`` and its not-found / already-exists /
conflict subclasses) live in ``kubevirt_actuator.clients.http``; the classes
here describe what a reconcile pass made of them.
"""

from datetime import timedelta


class ActuatorError(RuntimeError):
    pass


class InvalidMachineConfiguration(ActuatorError):
    """The machine spec cannot be turned into a VM; retrying will not help."""

    def __init__(self, message: str, *args: object):
        if args:
            message = message % args
        super().__init__(message)


class ConfigurationNotReady(ActuatorError):
    """Shared cluster configuration or a referenced secret is not usable yet."""

    def __init__(self, message: str, *args: object):
        if args:
            message = message % args
        super().__init__(message)


class RequeueAfterError(ActuatorError):
    def __init__(self, requeue_after: timedelta, reason: str = ""):
        self.requeue_after = requeue_after
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"requeue in {int(requeue_after.total_seconds())}s{detail}"
        )


class MachineOperationError(ActuatorError):
    def __init__(self, *, machine: str, stage: str, detail: str):
        self.machine = machine
        self.stage = stage
        self.detail = detail
        super().__init__(f"{machine}: {stage} failed: {detail}")


class StatusSyncError(ActuatorError):
    """The infra object was written but its state could not be folded back."""

    def __init__(self, *, machine: str, detail: str):
        self.machine = machine
        self.detail = detail
        super().__init__(f"{machine}: failed syncing machine from vm: {detail}")
