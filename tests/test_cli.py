from __future__ import annotations

from click.testing import CliRunner

import slicepilot.main as main
from slicepilot.core.exporter import ExportBatch, ExportedSlice
from slicepilot.core.plan import SelectionPlan, SeriesSelection, Strategy

from conftest import records


def _records():
    return records("1.2.2", 2, 40, description="Axial 5mm") + records("1.2.3", 3, 60, description="Axial 1mm")


def test_series_lists_primary(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "scan_directory", lambda path: _records())
    result = CliRunner().invoke(main.cli, ["series", str(tmp_path)])
    assert result.exit_code == 0, result.output
    assert "* #3" in result.output
    assert "  #2" in result.output


def test_empty_directory_is_an_error(tmp_path):
    result = CliRunner().invoke(main.cli, ["series", str(tmp_path)])
    assert result.exit_code == 1
    assert "No DICOM series found" in result.output


class _Engine:
    def __init__(self, settings):
        pass

    def model_labels(self):
        return "planner", "viewer"

    def plan_selection(self, study, hint, viewport_context=None):
        return SelectionPlan.build("thin axials", [SeriesSelection("3", (1, 60), Strategy.UNIFORM, 4)])

    def analyze_images(self, images, study, hint, plan, labels):
        return "Nothing focal. See Slice 21."


class _Exporter:
    def __init__(self, **kwargs):
        pass

    def export_slices(self, slices, window_center, window_width, *, axis=2, cancel=None):
        return ExportBatch(
            [ExportedSlice(b"\xff\xd8jpeg", s.instance_number, s.position[axis], s.image_handle) for s in slices]
        )


def test_analyze_end_to_end(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "scan_directory", lambda path: _records())
    monkeypatch.setattr(main, "InferenceEngine", _Engine)
    monkeypatch.setattr(main, "SliceExporter", _Exporter)
    out = tmp_path / "out"

    result = CliRunner().invoke(
        main.cli, ["analyze", str(tmp_path), "--hint", "nodules?", "--yes", "--out", str(out)]
    )
    assert result.exit_code == 0, result.output
    assert "Nothing focal." in result.output
    assert "[4] Slice 60/60" in result.output
    assert "series #3, instance 21" in result.output
    assert len(list(out.glob("*.jpg"))) == 4


def test_analyze_declined_confirmation(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "scan_directory", lambda path: _records())
    monkeypatch.setattr(main, "InferenceEngine", _Engine)
    monkeypatch.setattr(main, "SliceExporter", _Exporter)
    result = CliRunner().invoke(main.cli, ["analyze", str(tmp_path), "--hint", "q"], input="n\n")
    assert result.exit_code == 0
    assert "Cancelled." in result.output
