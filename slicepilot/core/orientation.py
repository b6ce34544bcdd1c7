from __future__ import annotations

"""Acquisition plane from Image Orientation (Patient) (0020,0037).

The tag holds six direction cosines: [rowX, rowY, rowZ, colX, colY, colZ].
row x col is the slice normal; its dominant axis names the plane.
"""

from enum import Enum
from typing import Any

from .utils import float_list


class Plane(str, Enum):
    AXIAL = "axial"
    SAGITTAL = "sagittal"
    CORONAL = "coronal"
    OBLIQUE = "oblique"


def slice_normal(iop: Any) -> tuple[float, float, float] | None:
    parts = float_list(iop, 6)
    if parts is None:
        return None
    rx, ry, rz, cx, cy, cz = parts
    return (ry * cz - rz * cy, rz * cx - rx * cz, rx * cy - ry * cx)


def classify_plane(iop: Any) -> Plane:
    """Classify a direction-cosine vector. Never raises; defaults to axial."""
    normal = slice_normal(iop)
    if normal is None:
        return Plane.AXIAL
    nx, ny, nz = (abs(c) for c in normal)
    if nz >= nx and nz >= ny:
        return Plane.AXIAL
    if nx >= ny:
        return Plane.SAGITTAL
    return Plane.CORONAL


def plane_axis(plane: Plane | str) -> int:
    """Index into a position vector for the coordinate that varies across slices."""
    p = Plane(plane) if not isinstance(plane, Plane) else plane
    if p is Plane.SAGITTAL:
        return 0
    if p is Plane.CORONAL:
        return 1
    return 2


def axis_name(plane: Plane | str) -> str:
    return "xyz"[plane_axis(plane)]
