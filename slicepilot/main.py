from __future__ import annotations

"""Command-line entry point: list series, or plan/export/analyze a study."""

import logging
from pathlib import Path

import click

from .core.addressing import resolve_text
from .core.dicom_io import scan_directory
from .core.engine import InferenceEngine, image_budget
from .core.errors import SlicePilotError
from .core.exporter import SliceExporter
from .core.logging_setup import setup_logging
from .core.pipeline import PipelineOrchestrator
from .core.plan import describe_selection
from .core.prompts import DISCLAIMER
from .core.settings import Settings, _read_setting
from .core.study import Study, build_study

logger = logging.getLogger(__name__)

_CTX = dict(help_option_names=["-h", "--help"], show_default=True, max_content_width=120)


def _load_study(path: Path) -> Study:
    records = scan_directory(path)
    study = build_study(records)
    if study.is_empty:
        raise SlicePilotError(f"No DICOM series found under {path}")
    return study


@click.group(context_settings=_CTX)
@click.option("-v", "--verbose", is_flag=True, help="Enable DEBUG logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """slicepilot: pick at most 20 DICOM slices for a vision model and ask it a question."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = Settings()


@cli.command("series")
@click.argument("path", type=click.Path(exists=True, file_okay=True, path_type=Path))
def series_cmd(path: Path) -> None:
    """List the series found under PATH. The primary series is marked with '*'."""
    try:
        study = _load_study(path)
    except SlicePilotError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"{study.description or '(no description)'} | {study.modality} | {study.total_slices} slices")
    for s in study.series:
        mark = "*" if s.uid == study.primary_series_uid else " "
        lo, hi = s.instance_range
        click.echo(
            f"{mark} #{s.number:<4} {s.plane.value:<9} {s.slice_count:>5} slices  "
            f"inst {lo}-{hi}  {s.description}"
        )


@cli.command("analyze")
@click.argument("path", type=click.Path(exists=True, file_okay=True, path_type=Path))
@click.option("--hint", required=True, help="Clinical question, e.g. 'Evaluate for lung nodules'.")
@click.option("--yes", "assume_yes", is_flag=True, help="Skip the plan confirmation prompt.")
@click.option(
    "--out",
    "out_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Write the exported JPEGs to this directory.",
)
@click.pass_context
def analyze_cmd(ctx: click.Context, path: Path, hint: str, assume_yes: bool, out_dir: Path | None) -> None:
    """Plan a slice selection for HINT, confirm it, export the slices and analyze them."""
    settings: Settings = ctx.obj["settings"]
    engine = InferenceEngine(settings)
    exporter = SliceExporter(max_workers=_read_setting(settings, "export_max_workers", int, 4))
    planning_model, vision_model = engine.model_labels()

    try:
        study = _load_study(path)
        orch = PipelineOrchestrator(
            study,
            engine,
            exporter,
            budget=image_budget(settings),
            planning_model=planning_model,
            vision_model=vision_model,
        )
        plan = orch.start(hint)
        click.echo(f"Plan: {plan.reasoning}")
        for sel in plan.selections:
            click.echo(f"  - {describe_selection(sel)}")
        click.echo(f"  total: ~{plan.total_images} images")

        if not assume_yes and not click.confirm("Proceed with export and analysis?", default=True):
            orch.cancel()
            click.echo("Cancelled.")
            return

        answer = orch.confirm()
    except SlicePilotError as e:
        raise click.ClickException(str(e)) from e

    state = orch.pipeline
    mappings = list(state.slice_mappings) if state else []
    if out_dir is not None:
        out_dir.mkdir(parents=True, exist_ok=True)
        for m, data in zip(mappings, orch.last_images):
            (out_dir / f"{m.image_index:02d}_s{m.series_number}_i{m.instance_number}.jpg").write_bytes(data)
        logger.info("Wrote %d images to %s", len(mappings), out_dir)

    click.echo("")
    click.echo(answer)
    click.echo("")
    click.echo("Images sent:")
    for m in mappings:
        click.echo(f"  [{m.image_index}] {m.label}")
    ref = resolve_text(answer, mappings)
    if ref is not None:
        click.echo(f"First referenced slice: series #{ref.series_number}, instance {ref.instance_number}")
    click.echo("")
    click.echo(DISCLAIMER)


if __name__ == "__main__":
    cli()
