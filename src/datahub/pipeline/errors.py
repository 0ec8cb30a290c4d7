"""Exception hierarchy for the pipeline engine.

Record-level failures never surface as exceptions; they are reported
through the ``on_record_error`` callback.  The types below cover the
cases that do escape a step: fatal step errors, circuit rejections,
hook failures and lookups against the run registry.
"""

from __future__ import annotations


class DataHubError(Exception):
    """Base exception for all datahub errors."""


class DefinitionError(DataHubError):
    """Raised when a pipeline definition cannot be parsed."""


class EngineError(DataHubError):
    """Raised for unrecoverable engine failures."""


class StepFailedError(EngineError):
    """A step aborted the run.

    Attributes:
        step_key: Key of the step that failed.
    """

    def __init__(self, message: str, *, step_key: str) -> None:
        super().__init__(message)
        self.step_key = step_key


class StepTimeoutError(StepFailedError):
    """A step exceeded its configured timeout."""


class CircuitOpenError(DataHubError):
    """A call was rejected because its circuit is open.

    Attributes:
        key: Circuit key (``"{code}:{scheme}://{host}"``).
        retry_after: Seconds until a trial call will be admitted.
    """

    def __init__(self, key: str, *, retry_after: float = 0.0) -> None:
        super().__init__(f"Circuit open for {key}")
        self.key = key
        self.retry_after = retry_after


class RunNotFoundError(DataHubError):
    """No run is registered under the requested id."""


class GateNotFoundError(DataHubError):
    """The run has no pending gate for the requested step."""


class HookActionError(DataHubError):
    """A batch-modifying hook action failed with ``fail_on_error`` set.

    Attributes:
        stage: Hook stage the action was bound to.
        action: Display name of the failing action.
    """

    def __init__(self, message: str, *, stage: str, action: str) -> None:
        super().__init__(message)
        self.stage = stage
        self.action = action


class UnsafeUrlError(DataHubError):
    """An outbound URL failed SSRF validation."""
