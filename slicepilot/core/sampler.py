from __future__ import annotations

import logging
from typing import Optional, Sequence, TypeVar

from .plan import DEFAULT_EVERY_NTH, DEFAULT_UNIFORM_COUNT, MAX_IMAGES, SeriesSelection, Strategy
from .study import Series, Slice
from .utils import round_half_up

logger = logging.getLogger(__name__)

T = TypeVar("T")


def uniform_indices(length: int, count: int) -> list[int]:
    """Evenly spaced positions in [0, length) including both ends.

    count >= length returns every position; count == 1 returns the middle.
    """
    if length <= 0 or count <= 0:
        return []
    if count >= length:
        return list(range(length))
    if count == 1:
        return [round_half_up((length - 1) / 2)]
    return [round_half_up(i * (length - 1) / (count - 1)) for i in range(count)]


def sample(
    slices: Sequence[T],
    strategy: Strategy | str,
    param: Optional[int] = None,
    *,
    budget: int = MAX_IMAGES,
) -> list[T]:
    """Reduce an ordered slice list under a sampling policy, then cap at `budget`."""
    items = list(slices)
    strategy = Strategy(strategy)

    if strategy is Strategy.EVERY_NTH:
        step = param if param and param > 0 else DEFAULT_EVERY_NTH
        selected = items[::step]
    elif strategy is Strategy.UNIFORM:
        count = param if param and param > 0 else DEFAULT_UNIFORM_COUNT
        selected = [items[i] for i in uniform_indices(len(items), min(count, len(items)))]
    else:
        selected = items

    if len(selected) > budget:
        logger.warning(
            "[Sampler] %s selected %d slices; resampling uniformly to %d",
            strategy.value,
            len(selected),
            budget,
        )
        selected = [selected[i] for i in uniform_indices(len(selected), budget)]
    return selected


def select_for_selection(series: Series, selection: SeriesSelection, *, budget: int = MAX_IMAGES) -> list[Slice]:
    """Restrict the series to the selection's instance range and sample it in instance order."""
    start, end = selection.slice_range
    in_range = series.slices_in_range(start, end)
    if not in_range:
        logger.warning(
            "[Sampler] No instances %d-%d in series #%s; sampling the whole series",
            start,
            end,
            series.number,
        )
        in_range = list(series.slices)
    in_range.sort(key=lambda sl: sl.instance_number)
    selected = sample(in_range, selection.strategy, selection.param, budget=budget)
    logger.debug(
        "[Sampler] Series #%s: %d of %d slices (%s)",
        series.number,
        len(selected),
        len(in_range),
        ", ".join(str(s.instance_number) for s in selected),
    )
    return selected
