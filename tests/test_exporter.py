from __future__ import annotations

import io
import time

import numpy as np
from PIL import Image

from slicepilot.core.cancel import CancelToken
from slicepilot.core.exporter import MAX_LONG_EDGE, SliceExporter, encode_jpeg, window_to_uint8
from slicepilot.core.study import Slice

AXIAL = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0)


def _slices(n: int) -> list[Slice]:
    return [Slice(i, (0.0, float(i) * 2, float(i) * 5), AXIAL, f"img-{i}") for i in range(1, n + 1)]


def _gradient_loader(handle: str):
    return np.tile(np.linspace(-1000, 1000, 64, dtype=np.float32), (32, 1)), "CT"


def _decode(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def test_window_to_uint8():
    arr = np.array([[-1000.0, -160.0, 40.0, 240.0, 3000.0]])
    out = window_to_uint8(arr, center=40, width=400)
    assert out.dtype == np.uint8
    assert out.tolist() == [[0, 0, 127, 255, 255]]


def test_zero_width_falls_back_to_percentile_scaling():
    out = window_to_uint8(np.full((4, 4), 7.0), center=0, width=0)
    assert out.max() == 0
    out = window_to_uint8(np.arange(100, dtype=np.float32).reshape(10, 10), center=0, width=0)
    assert out.min() == 0
    assert out.max() == 255


def test_long_edge_is_capped():
    img8 = np.zeros((1000, 2000), dtype=np.uint8)
    img = _decode(encode_jpeg(img8))
    assert img.format == "JPEG"
    assert img.size == (MAX_LONG_EDGE, 784)

    small = _decode(encode_jpeg(np.zeros((32, 64), dtype=np.uint8)))
    assert small.size == (64, 32)


def test_export_preserves_input_order():
    def slow_first(handle: str):
        n = int(handle.split("-")[1])
        time.sleep(0.02 * (6 - n))
        return _gradient_loader(handle)

    exporter = SliceExporter(loader=slow_first, max_workers=4)
    batch = exporter.export_slices(_slices(5), 40, 400)
    assert [e.instance_number for e in batch.exported] == [1, 2, 3, 4, 5]
    assert [e.coordinate for e in batch.exported] == [5.0, 10.0, 15.0, 20.0, 25.0]
    assert not batch.failures
    for e in batch.exported:
        assert _decode(e.image_bytes).mode == "L"
    assert batch.total_bytes == sum(e.size for e in batch.exported)


def test_coordinate_follows_axis():
    batch = SliceExporter(loader=_gradient_loader).export_slices(_slices(2), 40, 400, axis=1)
    assert [e.coordinate for e in batch.exported] == [2.0, 4.0]


def test_failed_slice_is_excluded_and_reported():
    def flaky(handle: str):
        if handle == "img-3":
            raise ValueError("pixel data missing")
        return _gradient_loader(handle)

    batch = SliceExporter(loader=flaky, max_workers=2).export_slices(_slices(4), 40, 400)
    assert [e.instance_number for e in batch.exported] == [1, 2, 4]
    assert len(batch.failures) == 1
    failure = batch.failures[0]
    assert failure.instance_number == 3
    assert failure.image_handle == "img-3"
    assert "pixel data missing" in failure.reason


def test_cancelled_token_skips_rendering():
    calls = []

    def loader(handle: str):
        calls.append(handle)
        return _gradient_loader(handle)

    token = CancelToken()
    token.cancel()
    batch = SliceExporter(loader=loader).export_slices(_slices(3), 40, 400, cancel=token)
    assert batch.exported == []
    assert calls == []


def test_empty_input():
    batch = SliceExporter(loader=_gradient_loader).export_slices([], 40, 400)
    assert batch.exported == []
    assert batch.total_bytes == 0
