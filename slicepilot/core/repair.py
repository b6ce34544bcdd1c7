from __future__ import annotations

"""Defensive repair of a provider-generated SelectionPlan.

Every correction here is recoverable: it is recorded as an Adjustment and
logged at WARNING, never raised. The input plan is never mutated; a new
plan is returned.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional

from .plan import (
    MAX_IMAGES,
    Role,
    SelectionPlan,
    SeriesSelection,
    Strategy,
    estimate_count,
    normalise_roles,
)
from .study import Series, Study

logger = logging.getLogger(__name__)

MIN_SUPPLEMENTARY_COUNT = 2


@dataclass(frozen=True)
class Adjustment:
    series_number: str
    kind: str
    message: str


@dataclass(frozen=True)
class RepairResult:
    plan: SelectionPlan
    adjustments: tuple[Adjustment, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.adjustments)


class _Log:
    def __init__(self) -> None:
        self.items: list[Adjustment] = []

    def add(self, series_number: str, kind: str, message: str) -> None:
        logger.warning("[PlanRepair] Series #%s: %s", series_number, message)
        self.items.append(Adjustment(series_number, kind, message))


def _repair_selection(sel: SeriesSelection, series: Series, budget: int, log: _Log) -> SeriesSelection:
    n = sel.series_number
    start, end = sel.slice_range
    if start > end:
        log.add(n, "swap-range", f"reversed range {start}-{end} swapped")
        start, end = end, start

    lo, hi = series.instance_range
    c_start, c_end = max(start, lo), min(end, hi)
    if c_start > c_end:
        # Range lies entirely outside the series: snap to the nearest bound.
        c_start = c_end = hi if start > hi else lo
    if (c_start, c_end) != (start, end):
        log.add(n, "clamp-range", f"range {start}-{end} clamped to series bounds {c_start}-{c_end}")
    sel = replace(sel, slice_range=(c_start, c_end))
    size = sel.range_size

    if sel.strategy is Strategy.ALL and size > budget:
        log.add(n, "all-to-uniform", f"'all' over {size} slices switched to uniform({budget})")
        sel = replace(sel, strategy=Strategy.UNIFORM, param=budget)

    if sel.strategy is Strategy.UNIFORM:
        if sel.param is None or sel.param <= 0:
            count = min(budget, size)
            log.add(n, "default-param", f"uniform without a count, defaulting to {count}")
            sel = replace(sel, param=count)
        elif sel.param > size or sel.param > budget:
            count = min(size, budget)
            log.add(n, "clamp-param", f"uniform({sel.param}) clamped to {count}")
            sel = replace(sel, param=count)

    if sel.strategy is Strategy.EVERY_NTH and (sel.param is None or sel.param <= 0):
        log.add(n, "default-param", "every_nth without a step, defaulting to 2")
        sel = replace(sel, param=2)

    return sel


def _total(sels: list[SeriesSelection]) -> int:
    return sum(estimate_count(s) for s in sels)


def _enforce_budget(sels: list[SeriesSelection], budget: int, log: _Log) -> list[SeriesSelection]:
    total = _total(sels)
    if total <= budget:
        return sels

    logger.info("[PlanRepair] Plan estimates %d images, budget is %d", total, budget)
    sels = list(sels)

    # 1. Shrink supplementary selections, last first.
    for i in reversed(range(len(sels))):
        if total <= budget:
            break
        sel = sels[i]
        if sel.role is not Role.SUPPLEMENTARY:
            continue
        est = estimate_count(sel)
        new_count = max(min(MIN_SUPPLEMENTARY_COUNT, est), est - (total - budget))
        if new_count >= est:
            continue
        log.add(sel.series_number, "shrink-supplementary", f"reduced from {est} to uniform({new_count}) to fit the budget")
        sels[i] = replace(sel, strategy=Strategy.UNIFORM, param=new_count)
        total = _total(sels)

    # 2. Drop supplementary selections entirely.
    if total > budget:
        dropped = [s for s in sels if s.role is Role.SUPPLEMENTARY]
        for s in dropped:
            log.add(s.series_number, "drop-supplementary", "supplementary selection dropped to fit the budget")
        sels = [s for s in sels if s.role is not Role.SUPPLEMENTARY]
        total = _total(sels)

    # 3. Force the primary down to the budget.
    if total > budget and sels:
        first = sels[0]
        if estimate_count(first) > budget:
            log.add(first.series_number, "force-primary", f"primary forced to uniform({budget})")
            first = replace(first, strategy=Strategy.UNIFORM, param=budget)
        rest = sels[1:]
        for s in rest:
            log.add(s.series_number, "drop-primary", "additional primary selection dropped to fit the budget")
        sels = [first]

    return sels


def repair_plan(plan: SelectionPlan, study: Study, budget: int = MAX_IMAGES) -> RepairResult:
    """Clamp a plan against the study geometry and the global image budget."""
    log = _Log()
    repaired: list[SeriesSelection] = []
    for sel in plan.selections:
        series: Optional[Series] = study.series_by_number(sel.series_number)
        if series is None:
            logger.warning(
                "[PlanRepair] Series #%s not found in study; selection passed through unchanged",
                sel.series_number,
            )
            repaired.append(sel)
            continue
        repaired.append(_repair_selection(sel, series, budget, log))

    # exactly one primary, listed first
    if repaired:
        repaired = normalise_roles(repaired)
    repaired = _enforce_budget(repaired, budget, log)
    new_plan = plan.with_selections(repaired)
    if log.items:
        logger.info(
            "[PlanRepair] %d adjustment(s); plan now estimates %d images",
            len(log.items),
            new_plan.total_images,
        )
    return RepairResult(plan=new_plan, adjustments=tuple(log.items))
