from __future__ import annotations

"""Study -> Series -> Slice model built from raw per-file header records.

The model is built once per loaded dataset and is read-only afterwards;
every type here is a frozen dataclass.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .orientation import Plane, classify_plane, plane_axis

logger = logging.getLogger(__name__)

Vec3 = tuple[float, float, float]
Vec6 = tuple[float, float, float, float, float, float]

DEFAULT_ORIENTATION: Vec6 = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0)


@dataclass(frozen=True)
class RawFileRecord:
    """Header fields of one image file, as produced by the tag reader."""

    series_uid: str
    instance_number: int
    image_handle: str
    image_position: Vec3 = (0.0, 0.0, 0.0)
    image_orientation: Vec6 = DEFAULT_ORIENTATION
    slice_location: Optional[float] = None
    series_number: int = 0
    series_description: str = ""
    modality: str = "unknown"
    slice_thickness: Optional[float] = None
    spacing_between_slices: Optional[float] = None
    convolution_kernel: Optional[str] = None
    window_center: Optional[float] = None
    window_width: Optional[float] = None
    rows: Optional[int] = None
    columns: Optional[int] = None
    pixel_spacing: Optional[tuple[float, float]] = None
    protocol_name: Optional[str] = None
    repetition_time: Optional[float] = None
    echo_time: Optional[float] = None
    magnetic_field_strength: Optional[float] = None
    kvp: Optional[float] = None
    xray_tube_current: Optional[float] = None
    study_description: str = ""
    body_part_examined: Optional[str] = None
    patient_age: Optional[str] = None
    patient_sex: Optional[str] = None
    study_date: Optional[str] = None
    institution_name: Optional[str] = None
    manufacturer: Optional[str] = None
    manufacturer_model_name: Optional[str] = None


@dataclass(frozen=True)
class Slice:
    instance_number: int
    position: Vec3
    orientation: Vec6
    image_handle: str
    slice_location: Optional[float] = None


@dataclass(frozen=True)
class AcquisitionParams:
    slice_thickness: Optional[float] = None
    spacing_between_slices: Optional[float] = None
    convolution_kernel: Optional[str] = None
    rows: Optional[int] = None
    columns: Optional[int] = None
    pixel_spacing: Optional[tuple[float, float]] = None
    protocol_name: Optional[str] = None
    # MR
    repetition_time: Optional[float] = None
    echo_time: Optional[float] = None
    magnetic_field_strength: Optional[float] = None
    estimated_weighting: Optional[str] = None
    # CT
    kvp: Optional[float] = None
    xray_tube_current: Optional[float] = None


@dataclass(frozen=True)
class Series:
    uid: str
    number: int
    description: str
    modality: str
    plane: Plane
    coord_min: float
    coord_max: float
    instance_range: tuple[int, int]
    slices: tuple[Slice, ...]
    window_center: Optional[float] = None
    window_width: Optional[float] = None
    params: AcquisitionParams = field(default_factory=AcquisitionParams)

    @property
    def slice_count(self) -> int:
        return len(self.slices)

    @property
    def coverage_mm(self) -> float:
        return abs(self.coord_max - self.coord_min)

    @property
    def axis(self) -> int:
        return plane_axis(self.plane)

    def coordinate(self, sl: Slice) -> float:
        return sl.position[self.axis]

    def find_slice(self, instance_number: int) -> Optional[Slice]:
        for sl in self.slices:
            if sl.instance_number == instance_number:
                return sl
        return None

    def slices_in_range(self, start: int, end: int) -> list[Slice]:
        """Slices whose instance number lies in [start, end], in series order."""
        lo, hi = min(start, end), max(start, end)
        return [sl for sl in self.slices if lo <= sl.instance_number <= hi]


@dataclass(frozen=True)
class Study:
    description: str = ""
    modality: str = "unknown"
    primary_series_uid: str = ""
    series: tuple[Series, ...] = ()
    body_part: Optional[str] = None
    patient_age: Optional[str] = None
    patient_sex: Optional[str] = None
    study_date: Optional[str] = None
    institution: Optional[str] = None
    manufacturer: Optional[str] = None
    manufacturer_model_name: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.series

    @property
    def primary_series(self) -> Optional[Series]:
        return self.series_by_uid(self.primary_series_uid)

    def series_by_uid(self, uid: str) -> Optional[Series]:
        if not uid:
            return None
        for s in self.series:
            if s.uid == uid:
                return s
        return None

    def series_by_number(self, number: str | int) -> Optional[Series]:
        key = str(number).strip().lstrip("#")
        for s in self.series:
            if str(s.number) == key:
                return s
        return None

    @property
    def total_slices(self) -> int:
        return sum(s.slice_count for s in self.series)


# ---------- MR weighting heuristic ----------

_WEIGHTING_KEYWORDS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"flair", re.I), "FLAIR"),
    (re.compile(r"stir", re.I), "STIR"),
    (re.compile(r"\b(dwi|diff|adc|trace)\b", re.I), "DWI"),
    (re.compile(r"\bpd\b|proton", re.I), "PD"),
    (re.compile(r"t1", re.I), "T1"),
    (re.compile(r"t2", re.I), "T2"),
]


def estimate_weighting(modality: str, description: str, tr: Optional[float], te: Optional[float]) -> Optional[str]:
    """Best-effort MR weighting label from the description, else from TR/TE."""
    if (modality or "").upper() != "MR":
        return None
    text = f"{description or ''}"
    for rx, label in _WEIGHTING_KEYWORDS:
        if rx.search(text):
            return label
    if tr is None or te is None:
        return None
    if tr < 800 and te < 30:
        return "T1"
    if tr > 2000 and te > 80:
        return "T2"
    if tr > 1500 and te < 50:
        return "PD"
    return None


# ---------- builder ----------

def _sort_records(recs: list[RawFileRecord], axis: int) -> list[RawFileRecord]:
    first = recs[0].image_position[axis]
    if all(r.image_position[axis] == first for r in recs):
        # Single-plane acquisition: nothing varies spatially.
        return sorted(recs, key=lambda r: r.instance_number)
    return sorted(recs, key=lambda r: (r.image_position[axis], r.instance_number))


def _build_series(uid: str, recs: list[RawFileRecord]) -> Series:
    rep = recs[0]
    plane = classify_plane(rep.image_orientation)
    axis = plane_axis(plane)
    ordered = _sort_records(recs, axis)

    coords = [r.image_position[axis] for r in ordered]
    instances = [r.instance_number for r in ordered]

    slices = tuple(
        Slice(
            instance_number=r.instance_number,
            position=r.image_position,
            orientation=r.image_orientation,
            image_handle=r.image_handle,
            slice_location=r.slice_location,
        )
        for r in ordered
    )
    params = AcquisitionParams(
        slice_thickness=rep.slice_thickness,
        spacing_between_slices=rep.spacing_between_slices,
        convolution_kernel=rep.convolution_kernel,
        rows=rep.rows,
        columns=rep.columns,
        pixel_spacing=rep.pixel_spacing,
        protocol_name=rep.protocol_name,
        repetition_time=rep.repetition_time,
        echo_time=rep.echo_time,
        magnetic_field_strength=rep.magnetic_field_strength,
        estimated_weighting=estimate_weighting(
            rep.modality, rep.series_description, rep.repetition_time, rep.echo_time
        ),
        kvp=rep.kvp,
        xray_tube_current=rep.xray_tube_current,
    )
    series = Series(
        uid=uid,
        number=int(rep.series_number),
        description=rep.series_description,
        modality=rep.modality,
        plane=plane,
        coord_min=min(coords),
        coord_max=max(coords),
        instance_range=(min(instances), max(instances)),
        slices=slices,
        window_center=rep.window_center,
        window_width=rep.window_width,
        params=params,
    )
    logger.debug(
        "Series #%s '%s': %s, %d slices, instances %d-%d",
        series.number,
        series.description,
        series.plane.value,
        series.slice_count,
        *series.instance_range,
    )
    return series


def _pick_primary(series: list[Series]) -> Optional[Series]:
    candidates = [s for s in series if s.plane is Plane.AXIAL] or series
    if not candidates:
        return None
    return min(candidates, key=lambda s: (-s.slice_count, s.number))


def build_study(records: Iterable[RawFileRecord]) -> Study:
    """Group raw records into a Study.

    Zero records yield an empty Study with an empty primary_series_uid;
    callers must check `Study.is_empty`.
    """
    records = list(records)
    if not records:
        logger.info("No image records; returning an empty study")
        return Study()

    groups: dict[str, list[RawFileRecord]] = {}
    for rec in records:
        groups.setdefault(rec.series_uid, []).append(rec)

    series = [_build_series(uid, recs) for uid, recs in groups.items()]
    series.sort(key=lambda s: s.number)
    primary = _pick_primary(series)

    first = records[0]
    study = Study(
        description=first.study_description,
        modality=first.modality,
        primary_series_uid=primary.uid if primary else "",
        series=tuple(series),
        body_part=first.body_part_examined,
        patient_age=first.patient_age,
        patient_sex=first.patient_sex,
        study_date=first.study_date,
        institution=first.institution_name,
        manufacturer=first.manufacturer,
        manufacturer_model_name=first.manufacturer_model_name,
    )
    logger.info(
        "Built study '%s': %d series, %d slices, primary series #%s",
        study.description,
        len(series),
        len(records),
        primary.number if primary else "-",
    )
    return study
