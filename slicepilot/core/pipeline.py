from __future__ import annotations

"""Analysis pipeline: plan -> confirm -> per-series export -> analysis.

The orchestrator is a small state machine. `transition()` is the whole
transition table and is pure; the orchestrator only applies it under a lock
and performs the external calls (provider, exporter) outside of it.

Runs are serialized by the caller. `cancel()` and `clear()` may be called from
another thread: they flip the run's CancelToken, and the worker discards its
result at the next check instead of touching state.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Sequence

from .addressing import SliceMapping, build_mappings
from .cancel import CancelToken
from .errors import EmptySelectionResult, InvalidTransition, PipelineCancelled
from .exporter import ExportBatch
from .plan import MAX_IMAGES, SelectionPlan, describe_selection
from .prompts import ChatMessage, ViewportContext
from .repair import repair_plan
from .sampler import select_for_selection
from .study import Series, Slice, Study
from .utils import fmt_kb

logger = logging.getLogger(__name__)


class ChatStatus(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    AWAITING_CONFIRMATION = "awaiting-confirmation"
    EXPORTING = "exporting"
    ANALYZING = "analyzing"
    FOLLOWING_UP = "following-up"
    ERROR = "error"


class Event(str, Enum):
    START = "start"
    PLAN_READY = "plan-ready"
    CONFIRM = "confirm"
    EXPORT_DONE = "export-done"
    ANALYSIS_DONE = "analysis-done"
    FOLLOW_UP = "follow-up"
    FOLLOW_UP_DONE = "follow-up-done"
    FAIL = "fail"
    CANCEL = "cancel"
    CLEAR = "clear"


IN_FLIGHT = frozenset(
    {
        ChatStatus.PLANNING,
        ChatStatus.AWAITING_CONFIRMATION,
        ChatStatus.EXPORTING,
        ChatStatus.ANALYZING,
        ChatStatus.FOLLOWING_UP,
    }
)

_TRANSITIONS: dict[tuple[ChatStatus, Event], ChatStatus] = {
    (ChatStatus.IDLE, Event.START): ChatStatus.PLANNING,
    (ChatStatus.ERROR, Event.START): ChatStatus.PLANNING,
    (ChatStatus.IDLE, Event.FOLLOW_UP): ChatStatus.FOLLOWING_UP,
    (ChatStatus.ERROR, Event.FOLLOW_UP): ChatStatus.FOLLOWING_UP,
    (ChatStatus.PLANNING, Event.PLAN_READY): ChatStatus.AWAITING_CONFIRMATION,
    (ChatStatus.AWAITING_CONFIRMATION, Event.CONFIRM): ChatStatus.EXPORTING,
    (ChatStatus.EXPORTING, Event.EXPORT_DONE): ChatStatus.ANALYZING,
    (ChatStatus.ANALYZING, Event.ANALYSIS_DONE): ChatStatus.IDLE,
    (ChatStatus.FOLLOWING_UP, Event.FOLLOW_UP_DONE): ChatStatus.IDLE,
}
for _s in (ChatStatus.PLANNING, ChatStatus.EXPORTING, ChatStatus.ANALYZING, ChatStatus.FOLLOWING_UP):
    _TRANSITIONS[(_s, Event.FAIL)] = ChatStatus.ERROR
for _s in IN_FLIGHT:
    _TRANSITIONS[(_s, Event.CANCEL)] = ChatStatus.IDLE
for _s in ChatStatus:
    _TRANSITIONS[(_s, Event.CLEAR)] = ChatStatus.IDLE


def transition(status: ChatStatus, event: Event) -> ChatStatus:
    nxt = _TRANSITIONS.get((ChatStatus(status), Event(event)))
    if nxt is None:
        raise InvalidTransition(ChatStatus(status).value, Event(event).value)
    return nxt


STATUS_LABELS: dict[ChatStatus, str] = {
    ChatStatus.IDLE: "Ready",
    ChatStatus.PLANNING: "Planning slice selection...",
    ChatStatus.AWAITING_CONFIRMATION: "Waiting for plan confirmation",
    ChatStatus.EXPORTING: "Exporting slices...",
    ChatStatus.ANALYZING: "Analyzing images...",
    ChatStatus.FOLLOWING_UP: "Thinking...",
    ChatStatus.ERROR: "Error",
}


# ---------- pipeline state ----------

class StepStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class PipelineStep:
    id: str
    label: str
    status: StepStatus = StepStatus.PENDING
    detail: Optional[str] = None
    duration_ms: Optional[int] = None


@dataclass(frozen=True)
class PipelineState:
    steps: tuple[PipelineStep, ...] = ()
    plan: Optional[SelectionPlan] = None
    slice_count: int = 0
    total_slices: int = 0
    exported_sizes: tuple[int, ...] = ()
    slice_mappings: tuple[SliceMapping, ...] = ()

    def step(self, step_id: str) -> Optional[PipelineStep]:
        for s in self.steps:
            if s.id == step_id:
                return s
        return None

    def update_step(self, step_id: str, **changes: Any) -> "PipelineState":
        steps = tuple(replace(s, **changes) if s.id == step_id else s for s in self.steps)
        return replace(self, steps=steps)

    @property
    def active_step(self) -> Optional[PipelineStep]:
        for s in self.steps:
            if s.status == StepStatus.ACTIVE:
                return s
        return None


def initial_pipeline(planning_model: str = "", vision_model: str = "") -> PipelineState:
    def label(text: str, model: str) -> str:
        return f"{text} ({model})" if model else text

    return PipelineState(
        steps=(
            PipelineStep("plan", label("Plan slice selection", planning_model)),
            PipelineStep("select", "Select slices"),
            PipelineStep("export", "Export images"),
            PipelineStep("analyze", label("Analyze images", vision_model)),
        )
    )


# ---------- collaborators ----------

class InferenceProvider(Protocol):
    def plan_selection(
        self, study: Study, hint: str, viewport_context: Optional[ViewportContext] = None
    ) -> SelectionPlan: ...

    def analyze_images(
        self,
        images: Sequence[bytes],
        study: Study,
        hint: str,
        plan: SelectionPlan,
        labels: Sequence[str],
    ) -> str: ...

    def continue_conversation(self, history: Sequence[ChatMessage], study: Study) -> str: ...


class ExportBackend(Protocol):
    def export_slices(
        self,
        slices: Sequence[Slice],
        window_center: float,
        window_width: float,
        *,
        axis: int = 2,
        cancel: Any = None,
    ) -> ExportBatch: ...


@dataclass
class _Sampled:
    series: Series
    center: float
    width: float
    slices: list[Slice] = field(default_factory=list)


class PipelineOrchestrator:
    def __init__(
        self,
        study: Study,
        provider: InferenceProvider,
        exporter: ExportBackend,
        *,
        budget: int = MAX_IMAGES,
        clock: Callable[[], float] = time.monotonic,
        planning_model: str = "",
        vision_model: str = "",
    ):
        self.study = study
        self.provider = provider
        self.exporter = exporter
        self.budget = min(budget, MAX_IMAGES)
        self.clock = clock
        self.planning_model = planning_model
        self.vision_model = vision_model

        self._lock = threading.RLock()
        self._status = ChatStatus.IDLE
        self._token = CancelToken()
        self._history: list[ChatMessage] = []
        self._plan: Optional[SelectionPlan] = None
        self._pipeline: Optional[PipelineState] = None
        self._hint = ""
        self._error: Optional[str] = None
        self._last_images: list[bytes] = []

    # ---------- read-only views ----------
    @property
    def status(self) -> ChatStatus:
        with self._lock:
            return self._status

    @property
    def status_text(self) -> str:
        with self._lock:
            if self._status == ChatStatus.ERROR and self._error:
                return f"Error: {self._error}"
            return STATUS_LABELS[self._status]

    @property
    def error(self) -> Optional[str]:
        with self._lock:
            return self._error

    @property
    def history(self) -> list[ChatMessage]:
        with self._lock:
            return list(self._history)

    @property
    def current_plan(self) -> Optional[SelectionPlan]:
        with self._lock:
            return self._plan

    @property
    def pipeline(self) -> Optional[PipelineState]:
        with self._lock:
            return self._pipeline

    @property
    def last_images(self) -> list[bytes]:
        """JPEG bytes sent with the last completed analysis, in mapping order."""
        with self._lock:
            return list(self._last_images)

    # ---------- internals ----------
    def _apply(self, event: Event) -> None:
        prev = self._status
        self._status = transition(self._status, event)
        logger.debug("[Pipeline] %s --%s--> %s", prev.value, event.value, self._status.value)

    def _new_run(self) -> CancelToken:
        self._token = CancelToken()
        return self._token

    def _elapsed_ms(self, t0: float) -> int:
        return int(round((self.clock() - t0) * 1000))

    def _check(self, token: CancelToken) -> None:
        if token.cancelled:
            logger.info("[Pipeline] Run cancelled; discarding result")
            token.raise_if_cancelled()

    def _set_step(self, step_id: str, **changes: Any) -> None:
        if self._pipeline is not None:
            self._pipeline = self._pipeline.update_step(step_id, **changes)

    def _fail(self, token: CancelToken, step_id: Optional[str], exc: BaseException, t0: float) -> None:
        """Mark the run failed. Raises PipelineCancelled if the run was already abandoned."""
        with self._lock:
            if token.cancelled:
                raise PipelineCancelled("Run was cancelled") from exc
            if step_id:
                self._set_step(step_id, status=StepStatus.ERROR, detail=str(exc), duration_ms=self._elapsed_ms(t0))
            # a failed follow-up keeps the images of the analysis it follows
            if step_id and self._pipeline is not None:
                self._pipeline = replace(self._pipeline, slice_mappings=(), exported_sizes=(), slice_count=0)
            self._error = str(exc)
            self._apply(Event.FAIL)
        logger.error("[Pipeline] %s step failed: %s", step_id or "follow-up", exc)

    # ---------- operations ----------
    def start(self, hint: str, viewport_context: Optional[ViewportContext] = None) -> SelectionPlan:
        """Ask the provider for a selection plan and repair it. Stops before export."""
        with self._lock:
            self._apply(Event.START)
            token = self._new_run()
            self._history.append(ChatMessage.user(hint))
            self._hint = hint
            self._error = None
            self._plan = None
            self._pipeline = initial_pipeline(self.planning_model, self.vision_model)
            self._set_step("plan", status=StepStatus.ACTIVE)
        logger.info("[Pipeline] Planning selection for: %s", hint)

        t0 = self.clock()
        try:
            raw = self.provider.plan_selection(self.study, hint, viewport_context)
        except PipelineCancelled:
            raise
        except Exception as e:
            self._fail(token, "plan", e, t0)
            raise
        self._check(token)

        result = repair_plan(raw, self.study, self.budget)
        plan = result.plan
        with self._lock:
            self._check(token)
            self._plan = plan
            detail = f"{len(plan.selections)} series, ~{plan.total_images} images"
            if result.changed:
                detail += f", {len(result.adjustments)} adjustment(s)"
            self._set_step("plan", status=StepStatus.DONE, detail=detail, duration_ms=self._elapsed_ms(t0))
            self._pipeline = replace(self._pipeline, plan=plan, total_slices=plan.total_images)
            self._apply(Event.PLAN_READY)
        for sel in plan.selections:
            logger.info("[Pipeline] %s", describe_selection(sel))
        return plan

    def _sample(self, plan: SelectionPlan) -> list[_Sampled]:
        out: list[_Sampled] = []
        taken = 0
        for sel in plan.selections:
            remaining = self.budget - taken
            if remaining <= 0:
                logger.warning("[Pipeline] Image budget reached; skipping series #%s", sel.series_number)
                break
            series = self.study.series_by_number(sel.series_number)
            if series is None:
                series = self.study.primary_series
                if series is None:
                    logger.warning("[Pipeline] Series #%s not found and no primary series", sel.series_number)
                    continue
                logger.warning(
                    "[Pipeline] Series #%s not found; falling back to primary series #%s",
                    sel.series_number,
                    series.number,
                )
            slices = select_for_selection(series, sel, budget=remaining)
            if not slices:
                continue
            taken += len(slices)
            out.append(_Sampled(series=series, center=sel.window_center, width=sel.window_width, slices=slices))
        return out

    def confirm(self, adjusted_plan: Optional[SelectionPlan] = None) -> str:
        """Export the (optionally user-adjusted) plan and run the vision analysis."""
        with self._lock:
            plan = self._plan
            if adjusted_plan is not None:
                plan = repair_plan(adjusted_plan, self.study, self.budget).plan
            if plan is None:
                raise InvalidTransition(self._status.value, Event.CONFIRM.value)
            self._apply(Event.CONFIRM)
            token = self._token
            self._plan = plan
            self._pipeline = replace(
                self._pipeline or initial_pipeline(self.planning_model, self.vision_model),
                plan=plan,
                total_slices=plan.total_images,
            )
            self._set_step("select", status=StepStatus.ACTIVE)
            hint = self._hint

        # select
        t0 = self.clock()
        groups = self._sample(plan)
        n_sampled = sum(len(g.slices) for g in groups)
        if n_sampled == 0:
            err = EmptySelectionResult()
            self._fail(token, "select", err, t0)
            raise err
        with self._lock:
            self._check(token)
            self._set_step(
                "select",
                status=StepStatus.DONE,
                detail=f"{n_sampled} slices from {len(groups)} series",
                duration_ms=self._elapsed_ms(t0),
            )
            self._pipeline = replace(self._pipeline, total_slices=n_sampled)
            self._set_step("export", status=StepStatus.ACTIVE)

        # export, one call per series with that selection's windowing
        t0 = self.clock()
        images: list[bytes] = []
        mappings: list[SliceMapping] = []
        for g in groups:
            try:
                batch = self.exporter.export_slices(
                    g.slices, g.center, g.width, axis=g.series.axis, cancel=token
                )
            except PipelineCancelled:
                raise
            except Exception as e:
                self._fail(token, "export", e, t0)
                raise
            self._check(token)

            new = build_mappings(batch.exported, g.series, start_index=len(mappings) + 1)
            images.extend(e.image_bytes for e in batch.exported)
            mappings.extend(new)
            with self._lock:
                self._check(token)
                self._pipeline = replace(
                    self._pipeline,
                    slice_count=len(mappings),
                    exported_sizes=self._pipeline.exported_sizes + tuple(e.size for e in batch.exported),
                    slice_mappings=tuple(mappings),
                )
                self._set_step("export", detail=f"{len(mappings)}/{n_sampled} images")

        if not images:
            err = EmptySelectionResult("Every selected slice failed to render. Try a different series or range.")
            self._fail(token, "export", err, t0)
            raise err
        if len(images) < n_sampled:
            logger.warning("[Pipeline] %d of %d slices were not exported", n_sampled - len(images), n_sampled)

        with self._lock:
            self._check(token)
            self._set_step(
                "export",
                status=StepStatus.DONE,
                detail=f"{len(images)} images, {fmt_kb(sum(self._pipeline.exported_sizes))}",
                duration_ms=self._elapsed_ms(t0),
            )
            self._apply(Event.EXPORT_DONE)
            self._set_step("analyze", status=StepStatus.ACTIVE)

        # analyze
        labels = [m.label for m in mappings]
        t0 = self.clock()
        try:
            text = self.provider.analyze_images(images, self.study, hint, plan, labels)
        except PipelineCancelled:
            raise
        except Exception as e:
            self._fail(token, "analyze", e, t0)
            raise
        self._check(token)

        with self._lock:
            self._check(token)
            self._history.append(ChatMessage.assistant(text))
            self._last_images = images
            self._set_step("analyze", status=StepStatus.DONE, duration_ms=self._elapsed_ms(t0))
            self._apply(Event.ANALYSIS_DONE)
        logger.info("[Pipeline] Analysis complete (%d images)", len(images))
        return text

    def cancel(self) -> bool:
        """Abandon the in-flight run. Returns False when nothing was in flight."""
        with self._lock:
            if self._status not in IN_FLIGHT:
                return False
            following_up = self._status is ChatStatus.FOLLOWING_UP
            self._token.cancel()
            self._apply(Event.CANCEL)
            if not following_up:
                self._plan = None
                self._pipeline = None
                self._hint = ""
            for i in range(len(self._history) - 1, -1, -1):
                if self._history[i].role == "user":
                    del self._history[i]
                    break
        logger.info("[Pipeline] Cancelled")
        return True

    def follow_up(self, text: str) -> str:
        """Text-only turn over the existing history. Image selection state is untouched."""
        with self._lock:
            self._apply(Event.FOLLOW_UP)
            token = self._new_run()
            self._error = None
            self._history.append(ChatMessage.user(text))
            history = list(self._history)

        t0 = self.clock()
        try:
            reply = self.provider.continue_conversation(history, self.study)
        except PipelineCancelled:
            raise
        except Exception as e:
            self._fail(token, None, e, t0)
            raise
        self._check(token)

        with self._lock:
            self._check(token)
            self._history.append(ChatMessage.assistant(reply))
            self._apply(Event.FOLLOW_UP_DONE)
        return reply

    def clear(self) -> None:
        with self._lock:
            self._token.cancel()
            self._apply(Event.CLEAR)
            self._history = []
            self._plan = None
            self._pipeline = None
            self._hint = ""
            self._error = None
            self._last_images = []
