from __future__ import annotations

"""Error taxonomy for the selection pipeline.

Only provider and planning failures reach the end user. Repair-time
adjustments are logged and never raised; per-slice export failures are
collected as records.
"""

from dataclasses import dataclass


class SlicePilotError(RuntimeError):
    pass


class MalformedPlanResponse(SlicePilotError):
    """Provider output could not be coerced into a SelectionPlan."""

    def __init__(self, reason: str, raw: str = ""):
        self.reason = reason
        self.raw = raw
        super().__init__(
            f"The model returned an unusable selection plan ({reason}). "
            "Try a more specific clinical question (e.g. 'Evaluate for lung nodules') "
            "or switch to a different provider/model."
        )


class EmptySelectionResult(SlicePilotError):
    def __init__(self, message: str = ""):
        super().__init__(
            message
            or "No slices matched the selection plan. Try adjusting the question or the slice range."
        )


class ProviderCommunicationFailure(SlicePilotError):
    """Network, timeout, auth or schema failure from an external provider."""


class PipelineCancelled(SlicePilotError):
    """Raised inside a run whose cancellation token was set. Not a user-facing error."""


class InvalidTransition(SlicePilotError):
    def __init__(self, status: str, event: str):
        self.status = status
        self.event = event
        super().__init__(f"Event '{event}' is not allowed in state '{status}'")


@dataclass(frozen=True)
class PerSliceExportFailure:
    """One slice that failed to render. Recovered locally, never raised."""

    instance_number: int
    image_handle: str
    reason: str
