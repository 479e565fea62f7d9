# services/selector.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Sequence

from services.ledger import (
    Candidate, Diagnostics, ValidateOptions, ValidationError, WeightTable,
    build_weight_table, validate,
)
from services.rng import MAX_DRAW_RANGE, RandomSource, default_random_source, rand_below

logger = logging.getLogger(__name__)

INVALID_TABLE = "invalid_table"


@dataclass
class DrawResult:
    ok: bool
    candidate: Candidate | None = None
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    @property
    def selected(self) -> Any:
        """Payload of the winning candidate (None unless ok)."""
        return self.candidate.payload if self.ok and self.candidate else None

    @property
    def error_kind(self) -> str | None:
        return self.diagnostics.error_kind

    def to_dict(self) -> dict:
        out = {"ok": self.ok, "diagnostics": self.diagnostics.to_dict()}
        if self.ok and self.candidate is not None:
            out["id"] = self.candidate.id
            out["packet"] = self.candidate.payload
        return out


def _table_problem(table: WeightTable | None) -> str | None:
    if table is None or not table.entries:
        return "Weight table is empty"
    if any(e.weight <= 0 for e in table.entries):
        return "Weight table holds non-positive weights"
    if sum(e.weight for e in table.entries) != table.total_weight:
        return "Weight table total does not match its entries"
    if table.total_weight > MAX_DRAW_RANGE:
        return f"Total weight {table.total_weight} exceeds {MAX_DRAW_RANGE}"
    return None


def _walk(table: WeightTable, r: int) -> tuple[int, bool]:
    """
    Index of the entry whose half-open range [acc, acc + w) holds r.
    The bool is False when the walk ran off the end and fell back to the last entry.
    """
    acc = 0
    for i, entry in enumerate(table.entries):
        if r < acc + entry.weight:
            return i, True
        acc += entry.weight
    return len(table.entries) - 1, False


def draw(table: WeightTable, source: RandomSource | None = None) -> DrawResult:
    """Pick one entry with probability weight / total_weight. Never raises."""
    src = source or default_random_source()
    base = table.diagnostics if table is not None else Diagnostics()
    diags = replace(base, invalid_items=list(base.invalid_items), random_source=src.name)

    problem = _table_problem(table)
    if problem:
        diags.error_kind, diags.error = INVALID_TABLE, problem
        logger.error("Refusing to draw: %s %s", problem, diags.to_dict())
        return DrawResult(ok=False, diagnostics=diags)

    r = rand_below(src, table.total_weight)
    idx, reached = _walk(table, r)
    if not reached:
        diags.selection_unreachable = True
        logger.critical("Weighted walk exhausted without a winner (r=%d total=%d); using last entry",
                        r, table.total_weight)
    return DrawResult(ok=True, candidate=table.entries[idx].candidate, diagnostics=diags)


def get_weighted_random_packet(
    packets: Sequence[Candidate],
    options: ValidateOptions | None = None,
    source: RandomSource | None = None,
) -> DrawResult:
    """
    Build, validate and draw in one call. Fails closed: any validation
    error comes back as ok=False with the diagnostics attached.
    """
    table = build_weight_table(packets)
    try:
        validate(table, options)
    except ValidationError as e:
        logger.warning("Draw-set rejected (%s): %s %s", e.kind, e.message, e.diagnostics.to_dict())
        if source is not None:
            e.diagnostics.random_source = source.name
        return DrawResult(ok=False, diagnostics=e.diagnostics)
    return draw(table, source)
