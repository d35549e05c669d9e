from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

from .errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Step:
    """One named unit of work; index is 1-based."""

    index: int
    name: str
    handler: Callable[[], None]


@dataclass(frozen=True)
class PipelineResult:
    ran_steps: List[str]
    last_index: int


def build_step_table(names: Sequence[str], owner: Any) -> List[Step]:
    """Bind each step name to the method of the same name on owner."""

    return [Step(index=i, name=name, handler=getattr(owner, name)) for i, name in enumerate(names, start=1)]


def find_step(steps: Sequence[Step], value: str) -> Optional[Step]:
    """Look a step up by name or by 1-based number."""

    for step in steps:
        if step.name == value:
            return step
    if value.strip().isdigit():
        n = int(value)
        if 1 <= n <= len(steps):
            return steps[n - 1]
    return None


def lookup_step(steps: Sequence[Step], value: str) -> Step:
    step = find_step(steps, value)
    if step is None:
        raise ValidationError(f'"{value}" is not a valid state name')
    return step


def resolve_range(
    steps: Sequence[Step],
    *,
    start: int = 1,
    until: Optional[str] = None,
    thru: Optional[str] = None,
) -> Tuple[int, int]:
    """Return the inclusive [first, last] step indexes to run.

    until stops before the named step, thru runs it too.
    """

    if until and thru:
        raise ValidationError("cannot specify both --until and --thru")
    end = len(steps)
    if until:
        end = lookup_step(steps, until).index - 1
    elif thru:
        end = lookup_step(steps, thru).index
    return start, end


def run_pipeline(
    *,
    steps: Sequence[Step],
    start: int,
    end: int,
    on_step_done: Callable[[Step], None],
) -> PipelineResult:
    """Run steps[start..end] strictly in order, reporting each completion."""

    ran: List[str] = []
    last = start - 1

    for step in steps:
        if step.index < start:
            continue
        if step.index > end:
            logger.info("Stopping before %s", step.name)
            break

        logger.info("[%d/%d] Running step %s", step.index, len(steps), step.name)
        step.handler()
        on_step_done(step)
        ran.append(step.name)
        last = step.index

    return PipelineResult(ran_steps=ran, last_index=last)
