from __future__ import annotations

"""DICOM file access: header scan into RawFileRecords and pixel loading.

Only headers are read during the scan (stop_before_pixels); pixels are
loaded per slice at export time.
"""

import logging
from pathlib import Path
from typing import Any, Optional

import numpy as np
import pydicom

from .study import DEFAULT_ORIENTATION, RawFileRecord
from .utils import float_list, opt_float, opt_int, safe_str

logger = logging.getLogger(__name__)

_SIDECAR_SUFFIXES = (".txt", ".json", ".xml", ".csv", ".md")
_MIN_FILE_SIZE = 256

HEADER_TAGS = [
    "SeriesInstanceUID",
    "SeriesNumber",
    "SeriesDescription",
    "Modality",
    "InstanceNumber",
    "ImagePositionPatient",
    "ImageOrientationPatient",
    "SliceLocation",
    "SliceThickness",
    "SpacingBetweenSlices",
    "ConvolutionKernel",
    "WindowCenter",
    "WindowWidth",
    "Rows",
    "Columns",
    "PixelSpacing",
    "ProtocolName",
    "RepetitionTime",
    "EchoTime",
    "MagneticFieldStrength",
    "KVP",
    "XRayTubeCurrent",
    "StudyDescription",
    "BodyPartExamined",
    "PatientAge",
    "PatientSex",
    "StudyDate",
    "InstitutionName",
    "Manufacturer",
    "ManufacturerModelName",
]


def _first(value: Any) -> Any:
    # WindowCenter / WindowWidth may be multi-valued; the first preset wins.
    if value is None or isinstance(value, (str, bytes)):
        return value
    try:
        return value[0]
    except (TypeError, IndexError):
        return value


def _opt_text(ds: Any, name: str) -> Optional[str]:
    v = getattr(ds, name, None)
    if v is None:
        return None
    if not isinstance(v, str) and hasattr(v, "__iter__"):
        v = "\\".join(safe_str(x) for x in v)
    s = safe_str(v).strip()
    return s or None


def record_from_dataset(ds: Any, handle: str) -> Optional[RawFileRecord]:
    """Map a pydicom Dataset to a RawFileRecord; None when it has no series uid."""
    sid = safe_str(getattr(ds, "SeriesInstanceUID", "") or "")
    if not sid:
        return None

    ipp = float_list(getattr(ds, "ImagePositionPatient", None), 3)
    iop = float_list(getattr(ds, "ImageOrientationPatient", None), 6)
    ps = float_list(getattr(ds, "PixelSpacing", None), 2)

    return RawFileRecord(
        series_uid=sid,
        instance_number=opt_int(getattr(ds, "InstanceNumber", None)) or 0,
        image_handle=handle,
        image_position=tuple(ipp) if ipp else (0.0, 0.0, 0.0),
        image_orientation=tuple(iop) if iop else DEFAULT_ORIENTATION,
        slice_location=opt_float(getattr(ds, "SliceLocation", None)),
        series_number=opt_int(getattr(ds, "SeriesNumber", None)) or 0,
        series_description=_opt_text(ds, "SeriesDescription") or "",
        modality=(_opt_text(ds, "Modality") or "unknown").upper(),
        slice_thickness=opt_float(getattr(ds, "SliceThickness", None)),
        spacing_between_slices=opt_float(getattr(ds, "SpacingBetweenSlices", None)),
        convolution_kernel=_opt_text(ds, "ConvolutionKernel"),
        window_center=opt_float(_first(getattr(ds, "WindowCenter", None))),
        window_width=opt_float(_first(getattr(ds, "WindowWidth", None))),
        rows=opt_int(getattr(ds, "Rows", None)),
        columns=opt_int(getattr(ds, "Columns", None)),
        pixel_spacing=(ps[0], ps[1]) if ps else None,
        protocol_name=_opt_text(ds, "ProtocolName"),
        repetition_time=opt_float(getattr(ds, "RepetitionTime", None)),
        echo_time=opt_float(getattr(ds, "EchoTime", None)),
        magnetic_field_strength=opt_float(getattr(ds, "MagneticFieldStrength", None)),
        kvp=opt_float(getattr(ds, "KVP", None)),
        xray_tube_current=opt_float(getattr(ds, "XRayTubeCurrent", None)),
        study_description=_opt_text(ds, "StudyDescription") or "",
        body_part_examined=_opt_text(ds, "BodyPartExamined"),
        patient_age=_opt_text(ds, "PatientAge"),
        patient_sex=_opt_text(ds, "PatientSex"),
        study_date=_opt_text(ds, "StudyDate"),
        institution_name=_opt_text(ds, "InstitutionName"),
        manufacturer=_opt_text(ds, "Manufacturer"),
        manufacturer_model_name=_opt_text(ds, "ManufacturerModelName"),
    )


def read_file_record(path: Path | str) -> Optional[RawFileRecord]:
    p = Path(path)
    try:
        ds = pydicom.dcmread(str(p), stop_before_pixels=True, force=True, specific_tags=HEADER_TAGS)
    except Exception as e:
        logger.debug("Skipping %s: %s", p, e)
        return None
    return record_from_dataset(ds, str(p))


def scan_directory(root: Path | str, *, limit_files: int = 50000) -> list[RawFileRecord]:
    """Recursively read DICOM headers under `root`."""
    src = Path(root)
    if not src.exists():
        raise FileNotFoundError(str(src))
    if src.is_file():
        rec = read_file_record(src)
        return [rec] if rec else []

    files: list[Path] = []
    for p in sorted(src.rglob("*")):
        if p.is_file():
            files.append(p)
            if len(files) >= limit_files:
                logger.warning("File limit reached (%d); remaining files are ignored", limit_files)
                break

    records: list[RawFileRecord] = []
    for p in files:
        if p.name.lower().endswith(_SIDECAR_SUFFIXES):
            continue
        try:
            if p.stat().st_size < _MIN_FILE_SIZE:
                continue
        except OSError:
            continue
        rec = read_file_record(p)
        if rec is not None:
            records.append(rec)

    logger.info("Scanned %d files under %s: %d DICOM images", len(files), src, len(records))
    return records


def load_pixels(handle: str) -> tuple[np.ndarray, str]:
    """Return (float32 pixel array in modality units, modality)."""
    ds = pydicom.dcmread(str(handle), force=True)
    arr = ds.pixel_array.astype(np.float32)
    if arr.ndim == 3 and arr.shape[-1] in (3, 4):
        arr = arr[..., :3].mean(axis=-1)
    elif arr.ndim == 3:
        # Multi-frame: the first frame stands for the instance.
        arr = arr[0]
    slope = float(getattr(ds, "RescaleSlope", 1.0) or 1.0)
    intercept = float(getattr(ds, "RescaleIntercept", 0.0) or 0.0)
    arr = arr * slope + intercept
    modality = safe_str(getattr(ds, "Modality", "") or "").upper()
    return arr, modality
