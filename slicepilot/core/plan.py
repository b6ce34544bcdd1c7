from __future__ import annotations

"""Selection plan model and coercion of free-form provider output.

Provider output is untrusted. It is classified into one of the recognised
shapes (multi-series, legacy single-series) or an explicit unparseable
variant; only the first two become a SelectionPlan.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union

from .errors import MalformedPlanResponse
from .study import Study
from .utils import opt_float, round_half_up

logger = logging.getLogger(__name__)

MAX_IMAGES = 20
DEFAULT_EVERY_NTH = 2
DEFAULT_UNIFORM_COUNT = 10

# CT soft tissue; used when neither the provider nor the series has a window.
FALLBACK_WINDOW = (40.0, 400.0)


class Role(str, Enum):
    PRIMARY = "primary"
    SUPPLEMENTARY = "supplementary"


class Strategy(str, Enum):
    ALL = "all"
    EVERY_NTH = "every_nth"
    UNIFORM = "uniform"


@dataclass(frozen=True)
class SeriesSelection:
    series_number: str
    slice_range: tuple[int, int]
    strategy: Strategy = Strategy.UNIFORM
    param: Optional[int] = None
    window_center: float = FALLBACK_WINDOW[0]
    window_width: float = FALLBACK_WINDOW[1]
    role: Role = Role.PRIMARY
    rationale: str = ""

    @property
    def range_size(self) -> int:
        start, end = self.slice_range
        return abs(end - start) + 1

    @property
    def is_primary(self) -> bool:
        return self.role is Role.PRIMARY


def estimate_count(sel: SeriesSelection) -> int:
    """Images this selection would produce if every instance in the range exists."""
    size = sel.range_size
    if sel.strategy is Strategy.ALL:
        return size
    if sel.strategy is Strategy.EVERY_NTH:
        step = sel.param if sel.param and sel.param > 0 else DEFAULT_EVERY_NTH
        return math.ceil(size / step)
    count = sel.param if sel.param and sel.param > 0 else DEFAULT_UNIFORM_COUNT
    return min(count, size)


@dataclass(frozen=True)
class SelectionPlan:
    reasoning: str
    selections: tuple[SeriesSelection, ...]
    total_images: int = field(default=0)

    @classmethod
    def build(cls, reasoning: str, selections: Iterable[SeriesSelection]) -> "SelectionPlan":
        sels = tuple(selections)
        return cls(reasoning=reasoning, selections=sels, total_images=sum(estimate_count(s) for s in sels))

    def with_selections(self, selections: Iterable[SeriesSelection]) -> "SelectionPlan":
        return SelectionPlan.build(self.reasoning, selections)

    # Legacy scalar mirrors of the primary (first) selection, for single-series consumers.

    @property
    def primary(self) -> Optional[SeriesSelection]:
        return self.selections[0] if self.selections else None

    @property
    def target_series(self) -> str:
        return self.primary.series_number if self.primary else ""

    @property
    def slice_range(self) -> tuple[int, int]:
        return self.primary.slice_range if self.primary else (0, 0)

    @property
    def window_center(self) -> float:
        return self.primary.window_center if self.primary else FALLBACK_WINDOW[0]

    @property
    def window_width(self) -> float:
        return self.primary.window_width if self.primary else FALLBACK_WINDOW[1]

    @property
    def sampling_strategy(self) -> Strategy:
        return self.primary.strategy if self.primary else Strategy.UNIFORM

    @property
    def sampling_param(self) -> Optional[int]:
        return self.primary.param if self.primary else None


# ---------- response shapes ----------

@dataclass(frozen=True)
class MultiSeriesShape:
    payload: Mapping[str, Any]


@dataclass(frozen=True)
class LegacyShape:
    payload: Mapping[str, Any]


@dataclass(frozen=True)
class UnparseableShape:
    reason: str
    raw: str = ""


PlanShape = Union[MultiSeriesShape, LegacyShape, UnparseableShape]

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.I)


def extract_json(text: str) -> str:
    """Pull a JSON object out of model output (fenced block or outermost braces)."""
    m = _FENCE_RE.search(text or "")
    if m:
        return m.group(1).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return text[start : end + 1]
    return (text or "").strip()


def classify_payload(obj: Any, raw: str = "") -> PlanShape:
    if not isinstance(obj, Mapping):
        return UnparseableShape("response is not a JSON object", raw)
    if "selections" in obj:
        return MultiSeriesShape(obj)
    if "targetSeries" in obj or "sliceRange" in obj:
        return LegacyShape(obj)
    return UnparseableShape("no 'selections' or 'targetSeries' field", raw)


def classify_response(text: str) -> PlanShape:
    raw = text or ""
    try:
        obj = json.loads(extract_json(raw))
    except (TypeError, ValueError):
        return UnparseableShape("response is not valid JSON", raw)
    return classify_payload(obj, raw)


# ---------- field coercion ----------

def _series_number(value: Any, where: str) -> str:
    if isinstance(value, str):
        value = value.strip().lstrip("#").strip()
    v = opt_float(value)
    if v is None or not float(v).is_integer():
        raise MalformedPlanResponse(f"{where}: series number {value!r} is missing or not numeric")
    return str(int(v))


def _slice_range(value: Any, where: str) -> tuple[int, int]:
    if not isinstance(value, (list, tuple)) or len(value) < 2:
        raise MalformedPlanResponse(f"{where}: sliceRange {value!r} is not a [start, end] pair")
    start, end = opt_float(value[0]), opt_float(value[1])
    if start is None or end is None:
        raise MalformedPlanResponse(f"{where}: sliceRange {value!r} is not numeric")
    return round_half_up(start), round_half_up(end)


def _strategy(value: Any) -> Strategy:
    try:
        return Strategy(str(value).strip().lower())
    except ValueError:
        if value is not None:
            logger.debug("Unknown sampling strategy %r; using uniform", value)
        return Strategy.UNIFORM


def _param(value: Any) -> Optional[int]:
    v = opt_float(value)
    return None if v is None else round_half_up(v)


def _role(value: Any, index: int) -> Role:
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        return Role.PRIMARY if index == 0 else Role.SUPPLEMENTARY


def _window(obj: Mapping[str, Any], series_number: str, study: Optional[Study]) -> tuple[float, float]:
    center = opt_float(obj.get("windowCenter"))
    width = opt_float(obj.get("windowWidth"))
    if center is not None and width is not None and width > 0:
        return center, width
    series = study.series_by_number(series_number) if study is not None else None
    if series is not None and series.window_center is not None and series.window_width:
        return series.window_center, series.window_width
    return FALLBACK_WINDOW


def _selection(obj: Any, index: int, study: Optional[Study], *, series_key: str) -> SeriesSelection:
    where = f"selection {index + 1}"
    if not isinstance(obj, Mapping):
        raise MalformedPlanResponse(f"{where} is not an object")
    number = _series_number(obj.get(series_key), where)
    center, width = _window(obj, number, study)
    return SeriesSelection(
        series_number=number,
        slice_range=_slice_range(obj.get("sliceRange"), where),
        strategy=_strategy(obj.get("samplingStrategy")),
        param=_param(obj.get("samplingParam")),
        window_center=center,
        window_width=width,
        role=_role(obj.get("role"), index),
        rationale=str(obj.get("rationale") or ""),
    )


def normalise_roles(sels: list[SeriesSelection]) -> list[SeriesSelection]:
    """Exactly one primary, and it comes first."""
    primary_idx = next((i for i, s in enumerate(sels) if s.is_primary), 0)
    primary = replace(sels[primary_idx], role=Role.PRIMARY)
    rest = [
        replace(s, role=Role.SUPPLEMENTARY) if s.is_primary else s
        for i, s in enumerate(sels)
        if i != primary_idx
    ]
    return [primary] + rest


def plan_from_shape(shape: PlanShape, study: Optional[Study] = None) -> SelectionPlan:
    if isinstance(shape, UnparseableShape):
        raise MalformedPlanResponse(shape.reason, shape.raw)

    payload = shape.payload
    reasoning = str(payload.get("reasoning") or "")
    if isinstance(shape, LegacyShape):
        sels = [_selection(payload, 0, study, series_key="targetSeries")]
    else:
        items = payload.get("selections")
        if not isinstance(items, list) or not items:
            raise MalformedPlanResponse("'selections' is empty or not a list")
        sels = [_selection(it, i, study, series_key="seriesNumber") for i, it in enumerate(items)]

    plan = SelectionPlan.build(reasoning, normalise_roles(sels))
    declared = opt_float(payload.get("totalImages"))
    if declared is not None and int(declared) != plan.total_images:
        logger.debug("Provider declared %s images; estimate is %d", declared, plan.total_images)
    return plan


def plan_from_wire(obj: Any, study: Optional[Study] = None) -> SelectionPlan:
    return plan_from_shape(classify_payload(obj), study)


def parse_plan_response(text: str, study: Optional[Study] = None) -> SelectionPlan:
    """Parse raw provider text into a SelectionPlan or raise MalformedPlanResponse."""
    return plan_from_shape(classify_response(text), study)


def selection_to_wire(sel: SeriesSelection) -> dict[str, Any]:
    out: dict[str, Any] = {
        "seriesNumber": sel.series_number,
        "role": sel.role.value,
        "rationale": sel.rationale,
        "sliceRange": [sel.slice_range[0], sel.slice_range[1]],
        "samplingStrategy": sel.strategy.value,
        "windowCenter": sel.window_center,
        "windowWidth": sel.window_width,
    }
    if sel.param is not None:
        out["samplingParam"] = sel.param
    return out


def plan_to_wire(plan: SelectionPlan) -> dict[str, Any]:
    out: dict[str, Any] = {
        "reasoning": plan.reasoning,
        "selections": [selection_to_wire(s) for s in plan.selections],
        "totalImages": plan.total_images,
        "targetSeries": plan.target_series,
        "sliceRange": list(plan.slice_range),
        "samplingStrategy": plan.sampling_strategy.value,
        "windowCenter": plan.window_center,
        "windowWidth": plan.window_width,
    }
    if plan.sampling_param is not None:
        out["samplingParam"] = plan.sampling_param
    return out


def describe_selection(sel: SeriesSelection) -> str:
    sampling = sel.strategy.value + (f"({sel.param})" if sel.param is not None else "")
    return (
        f"Series #{sel.series_number} [{sel.role.value}] instances {sel.slice_range[0]}-{sel.slice_range[1]}, "
        f"{sampling}, W:{sel.window_width:g} C:{sel.window_center:g}"
    )
