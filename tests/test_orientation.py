from __future__ import annotations

from slicepilot.core.orientation import Plane, axis_name, classify_plane, plane_axis


def test_standard_planes():
    assert classify_plane([1, 0, 0, 0, 1, 0]) is Plane.AXIAL
    assert classify_plane([0, 1, 0, 0, 0, -1]) is Plane.SAGITTAL
    assert classify_plane([1, 0, 0, 0, 0, -1]) is Plane.CORONAL


def test_backslash_string_is_accepted():
    assert classify_plane("0\\1\\0\\0\\0\\-1") is Plane.SAGITTAL


def test_missing_or_malformed_defaults_to_axial():
    assert classify_plane(None) is Plane.AXIAL
    assert classify_plane([1, 0, 0]) is Plane.AXIAL
    assert classify_plane("a\\b\\c\\d\\e\\f") is Plane.AXIAL
    assert classify_plane(42) is Plane.AXIAL


def test_tie_goes_to_axial():
    # normal = (0, -0.7071, 0.7071): y and z tie
    assert classify_plane([1, 0, 0, 0, 0.7071, 0.7071]) is Plane.AXIAL


def test_slightly_oblique_axial():
    assert classify_plane([0.99, 0.1, 0.0, -0.1, 0.99, 0.05]) is Plane.AXIAL


def test_axis_lookup():
    assert plane_axis(Plane.SAGITTAL) == 0
    assert plane_axis(Plane.CORONAL) == 1
    assert plane_axis(Plane.AXIAL) == 2
    assert plane_axis("oblique") == 2
    assert axis_name(Plane.CORONAL) == "y"
