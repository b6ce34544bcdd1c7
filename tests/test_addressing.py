from __future__ import annotations

from slicepilot.core.addressing import (
    RefKind,
    SliceMapping,
    build_label,
    build_mappings,
    capture_viewport_context,
    navigate,
    parse_slice_refs,
    resolve_ref,
    resolve_text,
)
from slicepilot.core.exporter import ExportedSlice


def _exported(series, numbers):
    out = []
    for n in numbers:
        sl = series.find_slice(n)
        out.append(ExportedSlice(b"x", n, series.coordinate(sl), sl.image_handle))
    return out


def _mapping(index: int, instance: int) -> SliceMapping:
    return SliceMapping(index, instance, f"h{instance}", float(instance), f"Slice {instance}", "2")


def test_label_contents(chest_study):
    series = chest_study.series_by_number(2)
    label = build_label(series, 45, 220.0)
    assert label.startswith("Slice 45/200")
    assert "Axial 5mm" in label
    assert "z=220.0mm" in label

    coronal = chest_study.series_by_number(4)
    assert "y=10.0mm" in build_label(coronal, 6, 10.0)


def test_mappings_are_contiguous_from_start_index(chest_study):
    series = chest_study.series_by_number(2)
    maps = build_mappings(_exported(series, [1, 50, 100]), series, start_index=6)
    assert [m.image_index for m in maps] == [6, 7, 8]
    assert [m.instance_number for m in maps] == [1, 50, 100]
    assert {m.series_number for m in maps} == {"2"}
    assert maps[1].coordinate == 245.0


def test_label_resolves_back_to_its_instance(chest_study):
    maps = []
    for number, picks in (("3", [1, 76, 151, 300]), ("4", [1, 40, 80])):
        series = chest_study.series_by_number(number)
        maps += build_mappings(_exported(series, picks), series, start_index=len(maps) + 1)
    for m in maps:
        hit = resolve_text(m.label, maps)
        assert hit is not None
        assert hit.instance_number == m.instance_number


def test_parse_both_grammars_in_text_order():
    refs = parse_slice_refs("Compare image 2 with Slices 45-66/187 and slice 9.")
    assert [r.kind for r in refs] == [RefKind.POSITION, RefKind.INSTANCE, RefKind.INSTANCE]
    pos, rng, single = refs
    assert (pos.start, pos.end) == (2, 2)
    assert (rng.start, rng.end, rng.total) == (45, 66, 187)
    assert rng.midpoint == 56
    assert (single.start, single.end, single.total) == (9, 9, None)


def test_en_dash_range():
    (ref,) = parse_slice_refs("see slices 10–20")
    assert (ref.start, ref.end) == (10, 20)


def test_instance_reference_prefers_in_range_then_closest():
    maps = [_mapping(1, 10), _mapping(2, 40), _mapping(3, 70)]
    (exact,) = parse_slice_refs("Slice 70")
    (outside,) = parse_slice_refs("Slice 50")
    (ranged,) = parse_slice_refs("Slices 40-80")
    assert resolve_ref(exact, maps).instance_number == 70
    assert resolve_ref(outside, maps).instance_number == 40
    assert resolve_ref(ranged, maps).instance_number == 70


def test_position_reference_uses_output_index():
    maps = [_mapping(1, 10), _mapping(2, 40), _mapping(3, 70)]
    assert resolve_text("Image 2 shows it", maps).instance_number == 40
    assert resolve_text("Images 1-3", maps).instance_number == 40
    assert resolve_text("Images 3-9", maps).instance_number == 70
    assert resolve_text("Image 8", maps) is None


def test_no_reference():
    assert resolve_text("Nothing to see here.", [_mapping(1, 10)]) is None
    assert resolve_text("Slice 4", []) is None


class FakeViewport:
    def __init__(self, handles=()):
        self.handles = list(handles)
        self.index = 0
        self.loads = 0
        self.renders = 0

    def load_series(self, image_handles):
        self.handles = list(image_handles)
        self.loads += 1

    def set_index(self, index):
        self.index = index

    def render(self):
        self.renders += 1

    def get_current_index(self):
        return self.index

    def get_loaded_handles(self):
        return self.handles


def test_navigate_switches_series_and_sets_index(chest_study):
    series = chest_study.series_by_number(4)
    (mapping,) = build_mappings(_exported(series, [25]), series)
    view = FakeViewport()
    assert navigate(mapping, chest_study, view)
    assert view.loads == 1
    assert view.get_current_index() == 24
    assert view.renders == 1

    assert navigate(mapping, chest_study, view)
    assert view.loads == 1


def test_navigate_unknown_series(chest_study):
    mapping = SliceMapping(1, 5, "h", 0.0, "Slice 5", "99")
    view = FakeViewport()
    assert not navigate(mapping, chest_study, view)
    assert view.loads == 0


def _handles(study, number):
    return [sl.image_handle for sl in study.series_by_number(number).slices]


def test_viewport_context_for_the_displayed_series(chest_study):
    view = FakeViewport(_handles(chest_study, 4))
    view.index = 9
    ctx = capture_viewport_context(chest_study, view)
    assert ctx.series_number == "4"
    assert ctx.current_instance_number == 10
    assert ctx.current_coordinate == 18.0
    assert ctx.total_slices_in_series == 80


def test_viewport_context_matches_on_first_handle(chest_study):
    view = FakeViewport(_handles(chest_study, 2)[:50])
    view.index = 3
    ctx = capture_viewport_context(chest_study, view)
    assert ctx.series_number == "2"
    assert ctx.current_instance_number == 4
    assert ctx.total_slices_in_series == 200


def test_viewport_context_none_when_out_of_range_or_unknown(chest_study):
    view = FakeViewport(_handles(chest_study, 2))
    view.index = 200
    assert capture_viewport_context(chest_study, view) is None
    view.index = -1
    assert capture_viewport_context(chest_study, view) is None
    assert capture_viewport_context(chest_study, FakeViewport(["elsewhere.dcm"])) is None
    assert capture_viewport_context(chest_study, FakeViewport()) is None
