from __future__ import annotations

"""Windowed JPEG export of selected slices.

Rendering of one batch (one series) may run on a small thread pool; results
are always reassembled in input order. A slice that fails to render is
dropped and reported as a PerSliceExportFailure, never raised.
"""

import io
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

import numpy as np
from PIL import Image

from .dicom_io import load_pixels
from .errors import PerSliceExportFailure
from .study import Slice

logger = logging.getLogger(__name__)

MAX_LONG_EDGE = 1568
JPEG_QUALITY = 85

PixelLoader = Callable[[str], "tuple[np.ndarray, str]"]


@dataclass(frozen=True)
class ExportedSlice:
    image_bytes: bytes
    instance_number: int
    coordinate: float
    image_handle: str

    @property
    def size(self) -> int:
        return len(self.image_bytes)


@dataclass
class ExportBatch:
    exported: list[ExportedSlice] = field(default_factory=list)
    failures: list[PerSliceExportFailure] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(e.size for e in self.exported)


def window_to_uint8(arr: np.ndarray, *, center: float, width: float) -> np.ndarray:
    if width <= 0:
        return percentile_to_uint8(arr)
    lo = center - width / 2.0
    hi = center + width / 2.0
    a = np.clip(arr.astype(np.float32), lo, hi)
    a = (a - lo) / max(hi - lo, 1e-6)
    return (a * 255.0).astype(np.uint8)


def percentile_to_uint8(arr: np.ndarray, *, p_lo: float = 1.0, p_hi: float = 99.0) -> np.ndarray:
    a = arr.astype(np.float32)
    lo = float(np.percentile(a, p_lo))
    hi = float(np.percentile(a, p_hi))
    if not np.isfinite(lo) or not np.isfinite(hi) or hi <= lo:
        lo, hi = float(a.min()), float(a.max())
        if hi <= lo:
            return np.zeros_like(a, dtype=np.uint8)
    a = np.clip(a, lo, hi)
    a = (a - lo) / max(hi - lo, 1e-6)
    return (a * 255.0).astype(np.uint8)


def encode_jpeg(img8: np.ndarray, *, max_long_edge: int = MAX_LONG_EDGE, quality: int = JPEG_QUALITY) -> bytes:
    if img8.ndim != 2:
        raise ValueError("Expected 2D image")
    img = Image.fromarray(img8)  # 2D uint8 -> mode "L"
    w, h = img.size
    long_edge = max(w, h)
    if long_edge > max_long_edge:
        scale = max_long_edge / long_edge
        img = img.resize((max(1, round(w * scale)), max(1, round(h * scale))), Image.Resampling.LANCZOS)
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


class SliceExporter:
    """Export/render collaborator: slices + windowing -> JPEG bytes."""

    def __init__(
        self,
        *,
        loader: PixelLoader = load_pixels,
        max_workers: int = 4,
        max_long_edge: int = MAX_LONG_EDGE,
        quality: int = JPEG_QUALITY,
    ):
        self.loader = loader
        self.max_workers = max(1, int(max_workers))
        self.max_long_edge = max_long_edge
        self.quality = quality

    def render_slice(self, handle: str, window_center: float, window_width: float) -> bytes:
        arr, _modality = self.loader(handle)
        img8 = window_to_uint8(arr, center=window_center, width=window_width)
        return encode_jpeg(img8, max_long_edge=self.max_long_edge, quality=self.quality)

    def _render_one(self, sl: Slice, center: float, width: float, cancel: Any) -> Optional[bytes]:
        if cancel is not None and cancel.cancelled:
            return None
        return self.render_slice(sl.image_handle, center, width)

    def export_slices(
        self,
        slices: Sequence[Slice],
        window_center: float,
        window_width: float,
        *,
        axis: int = 2,
        cancel: Any = None,
    ) -> ExportBatch:
        """Render `slices` in order. Failed slices are excluded and reported."""
        batch = ExportBatch()
        if not slices:
            return batch

        workers = min(self.max_workers, len(slices))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="slice-export") as pool:
            futures = [pool.submit(self._render_one, sl, window_center, window_width, cancel) for sl in slices]
            # Iterate futures in submission order, not completion order.
            for sl, fut in zip(slices, futures):
                try:
                    data = fut.result()
                except Exception as e:
                    logger.warning("[Export] Instance %d failed to render: %s", sl.instance_number, e)
                    batch.failures.append(PerSliceExportFailure(sl.instance_number, sl.image_handle, str(e)))
                    continue
                if data is None:
                    continue
                batch.exported.append(
                    ExportedSlice(
                        image_bytes=data,
                        instance_number=sl.instance_number,
                        coordinate=float(sl.position[axis]),
                        image_handle=sl.image_handle,
                    )
                )

        if batch.failures:
            logger.warning(
                "[Export] %d of %d slices could not be rendered and were excluded",
                len(batch.failures),
                len(slices),
            )
        return batch
