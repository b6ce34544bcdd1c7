from __future__ import annotations

import pytest

from slicepilot.core.study import RawFileRecord, Study, build_study

AXIAL = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0)
SAGITTAL = (0.0, 1.0, 0.0, 0.0, 0.0, -1.0)
CORONAL = (1.0, 0.0, 0.0, 0.0, 0.0, -1.0)


def records(
    uid: str,
    number: int,
    count: int,
    *,
    orientation=AXIAL,
    axis: int = 2,
    description: str = "",
    spacing: float = 1.0,
    first_instance: int = 1,
    modality: str = "CT",
) -> list[RawFileRecord]:
    out = []
    for i in range(count):
        pos = [0.0, 0.0, 0.0]
        pos[axis] = i * spacing
        inst = first_instance + i
        out.append(
            RawFileRecord(
                series_uid=uid,
                instance_number=inst,
                image_handle=f"{uid}/{inst}.dcm",
                image_position=tuple(pos),
                image_orientation=orientation,
                series_number=number,
                series_description=description,
                modality=modality,
                study_description="CT CHEST W/O CONTRAST",
            )
        )
    return out


@pytest.fixture
def make_records():
    return records


@pytest.fixture
def chest_study() -> Study:
    """Series #2 axial 200 slices, #3 axial 300 slices (primary), #4 coronal 80 slices."""
    return build_study(
        records("1.2.2", 2, 200, description="Axial 5mm", spacing=5.0)
        + records("1.2.3", 3, 300, description="Axial 1mm lung")
        + records("1.2.4", 4, 80, orientation=CORONAL, axis=1, description="Coronal MPR", spacing=2.0)
    )
