from __future__ import annotations

"""Human-readable slice labels and resolution of free-text slice references.

Two reference grammars exist and are kept apart:

* instance references, "Slice 45", "Slices 45-66/187": true instance numbers;
* legacy position references, "Image 3", "Images 2-4": 1-based positions
  among the images that were sent.

A position reference overlapping an instance reference is dropped; the
instance grammar is evaluated first and wins. The priority is positional only:
"Image 3" written to mean instance 3 still resolves as output position 3.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Protocol, Sequence

from .exporter import ExportedSlice
from .orientation import axis_name
from .prompts import ViewportContext
from .study import Series, Study
from .utils import round_half_up

logger = logging.getLogger(__name__)

SLICE_REF_PATTERN = re.compile(r"\b[Ss]lices?\s+(\d+)(?:\s*[-–]\s*(\d+))?(?:/(\d+))?\b")
IMAGE_REF_PATTERN = re.compile(r"\b[Ii]mages?\s+(\d+)(?:\s*[-–]\s*(\d+))?\b")


@dataclass(frozen=True)
class SliceMapping:
    image_index: int  # 1-based position among the images sent
    instance_number: int
    image_handle: str
    coordinate: float
    label: str
    series_number: str


class RefKind(str, Enum):
    INSTANCE = "instance"
    POSITION = "position"


@dataclass(frozen=True)
class SliceRef:
    kind: RefKind
    start: int
    end: int
    total: Optional[int]
    span: tuple[int, int]
    text: str

    @property
    def midpoint(self) -> int:
        return round_half_up((self.start + self.end) / 2)


def build_label(series: Series, instance_number: int, coordinate: float) -> str:
    desc = (series.description or "").strip() or f"Series #{series.number}"
    return (
        f"Slice {instance_number}/{series.slice_count} · {desc} · "
        f"{axis_name(series.plane)}={coordinate:.1f}mm"
    )


def build_mappings(exported: Iterable[ExportedSlice], series: Series, *, start_index: int = 1) -> list[SliceMapping]:
    """Mappings for successfully exported images, numbered contiguously from `start_index`."""
    out: list[SliceMapping] = []
    for i, e in enumerate(exported):
        out.append(
            SliceMapping(
                image_index=start_index + i,
                instance_number=e.instance_number,
                image_handle=e.image_handle,
                coordinate=e.coordinate,
                label=build_label(series, e.instance_number, e.coordinate),
                series_number=str(series.number),
            )
        )
    return out


def _overlaps(a: tuple[int, int], b: tuple[int, int]) -> bool:
    return a[0] < b[1] and a[1] > b[0]


def parse_slice_refs(text: str) -> list[SliceRef]:
    """All slice references in `text`, in text order."""
    refs: list[SliceRef] = []
    for m in SLICE_REF_PATTERN.finditer(text or ""):
        start = int(m.group(1))
        refs.append(
            SliceRef(
                kind=RefKind.INSTANCE,
                start=start,
                end=int(m.group(2)) if m.group(2) else start,
                total=int(m.group(3)) if m.group(3) else None,
                span=m.span(),
                text=m.group(0),
            )
        )
    for m in IMAGE_REF_PATTERN.finditer(text or ""):
        if any(_overlaps(m.span(), r.span) for r in refs):
            continue
        start = int(m.group(1))
        refs.append(
            SliceRef(
                kind=RefKind.POSITION,
                start=start,
                end=int(m.group(2)) if m.group(2) else start,
                total=None,
                span=m.span(),
                text=m.group(0),
            )
        )
    refs.sort(key=lambda r: r.span[0])
    return refs


def _closest(mappings: Iterable[SliceMapping], target: int) -> Optional[SliceMapping]:
    best: Optional[SliceMapping] = None
    for m in mappings:
        if best is None or abs(m.instance_number - target) < abs(best.instance_number - target):
            best = m
    return best


def resolve_ref(ref: SliceRef, mappings: Sequence[SliceMapping]) -> Optional[SliceMapping]:
    lo, hi = min(ref.start, ref.end), max(ref.start, ref.end)
    if ref.kind is RefKind.POSITION:
        for m in mappings:
            if m.image_index == ref.midpoint:
                return m
        return next((m for m in mappings if lo <= m.image_index <= hi), None)

    in_range = [m for m in mappings if lo <= m.instance_number <= hi]
    return _closest(in_range, ref.midpoint) or _closest(mappings, ref.midpoint)


def resolve_text(text: str, mappings: Sequence[SliceMapping]) -> Optional[SliceMapping]:
    """Resolve the first reference in `text` that maps to an image."""
    for ref in parse_slice_refs(text):
        hit = resolve_ref(ref, mappings)
        if hit is not None:
            return hit
    return None


# ---------- viewport navigation ----------

class Viewport(Protocol):
    def load_series(self, image_handles: Sequence[str]) -> None: ...

    def set_index(self, index: int) -> None: ...

    def render(self) -> None: ...

    def get_current_index(self) -> int: ...

    def get_loaded_handles(self) -> Sequence[str]: ...


def navigate(mapping: SliceMapping, study: Study, viewport: Viewport) -> bool:
    """Show the slice behind `mapping`, switching series first if needed."""
    series = study.series_by_number(mapping.series_number)
    if series is None:
        logger.warning("[Navigate] Series #%s is not part of the study", mapping.series_number)
        return False

    handles = [s.image_handle for s in series.slices]
    if list(viewport.get_loaded_handles()) != handles:
        logger.debug("[Navigate] Switching viewport to series #%s", series.number)
        viewport.load_series(handles)

    try:
        index = handles.index(mapping.image_handle)
    except ValueError:
        index = next(
            (i for i, s in enumerate(series.slices) if s.instance_number == mapping.instance_number),
            -1,
        )
    if index < 0:
        logger.warning("[Navigate] Instance %d not found in series #%s", mapping.instance_number, series.number)
        return False

    viewport.set_index(index)
    viewport.render()
    return True


def _displayed_series(study: Study, handles: Sequence[str]) -> Optional[Series]:
    if not handles:
        return None
    for s in study.series:
        if [sl.image_handle for sl in s.slices] == handles:
            return s
    for s in study.series:
        if any(sl.image_handle == handles[0] for sl in s.slices):
            return s
    return None


def capture_viewport_context(study: Study, viewport: Viewport) -> Optional[ViewportContext]:
    """Describe the slice currently on screen, or None when it cannot be placed in the study."""
    handles = list(viewport.get_loaded_handles())
    series = _displayed_series(study, handles)
    if series is None:
        logger.debug("[Viewport] Displayed images do not belong to any series")
        return None

    index = viewport.get_current_index()
    if not 0 <= index < series.slice_count:
        logger.debug("[Viewport] Index %d is outside series #%s", index, series.number)
        return None

    sl = series.slices[index]
    ctx = ViewportContext(
        current_instance_number=sl.instance_number,
        current_coordinate=series.coordinate(sl),
        series_number=str(series.number),
        total_slices_in_series=series.slice_count,
    )
    logger.debug("[Viewport] Context: %s", ctx)
    return ctx
