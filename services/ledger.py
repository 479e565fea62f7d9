# services/ledger.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from services.fixed_point import (
    HUNDRED_PERCENT, classify_rate, fixed_point_to_percent_string, percent_to_units,
)

logger = logging.getLogger(__name__)

EMPTY_CANDIDATE_SET = "empty_candidate_set"
ZERO_TOTAL_WEIGHT = "zero_total_weight"
TOLERANCE_EXCEEDED = "tolerance_exceeded"


@dataclass(frozen=True)
class Candidate:
    id: Any
    probability_text: Any
    payload: Any = None


@dataclass(frozen=True)
class InvalidItem:
    index: int
    raw: Any
    reason: str

    def to_dict(self) -> dict:
        return {"index": self.index, "prob_rate": self.raw, "reason": self.reason}


@dataclass
class Diagnostics:
    total_percent: str = "0.0000000"
    count: int = 0
    zero_weight_count: int = 0
    invalid_items: list[InvalidItem] = field(default_factory=list)
    error_kind: str | None = None
    error: str | None = None
    random_source: str | None = None
    selection_unreachable: bool = False

    def to_dict(self) -> dict:
        out = {
            "total_percent": self.total_percent,
            "count": self.count,
            "zero_weight_count": self.zero_weight_count,
            "invalid_items": [i.to_dict() for i in self.invalid_items],
        }
        if self.error_kind:
            out["error_kind"] = self.error_kind
            out["error"] = self.error
        if self.random_source:
            out["random_source"] = self.random_source
        if self.selection_unreachable:
            out["selection_unreachable"] = True
        return out


@dataclass(frozen=True)
class WeightedEntry:
    candidate: Candidate
    weight: int
    index: int          # position in the caller's candidate list


@dataclass(frozen=True)
class WeightTable:
    entries: tuple[WeightedEntry, ...]
    total_weight: int
    diagnostics: Diagnostics = field(compare=False)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class ValidateOptions:
    require_total_100: bool = True
    tolerance: Any = "0.000001"      # percent
    strict_positive: bool = True

    @property
    def tolerance_units(self) -> int:
        return percent_to_units(self.tolerance)

    @classmethod
    def from_config(cls, cfg: dict | None) -> "ValidateOptions":
        cfg = cfg or {}
        return cls(
            require_total_100=bool(cfg.get("require_total_100", True)),
            tolerance=cfg.get("tolerance_percent", "0.000001"),
            strict_positive=bool(cfg.get("strict_positive", True)),
        )


class ValidationError(Exception):
    """A draw-set failed validation; no selection may be made from it."""

    def __init__(self, kind: str, message: str, diagnostics: Diagnostics):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.diagnostics = diagnostics


def candidates_from_packets(rows: Iterable[dict], rate_key: str = "prob_rate") -> list[Candidate]:
    """Wrap catalog rows as candidates; the whole row rides along as payload."""
    return [Candidate(id=r.get("id"), probability_text=r.get(rate_key), payload=r) for r in rows or []]


def build_weight_table(candidates: Sequence[Candidate]) -> WeightTable:
    entries: list[WeightedEntry] = []
    diags = Diagnostics(count=len(candidates or []))
    total = 0

    for idx, cand in enumerate(candidates or []):
        units, reason = classify_rate(cand.probability_text)
        if units == 0:
            diags.zero_weight_count += 1
        if reason is not None:
            diags.invalid_items.append(InvalidItem(idx, cand.probability_text, reason))
        if units > 0:
            entries.append(WeightedEntry(cand, units, idx))
            total += units

    diags.total_percent = fixed_point_to_percent_string(total)
    if diags.invalid_items:
        logger.warning("Ignored %d invalid prob_rate entries: %s",
                       len(diags.invalid_items), [i.to_dict() for i in diags.invalid_items])
    return WeightTable(entries=tuple(entries), total_weight=total, diagnostics=diags)


def _fail(table: WeightTable, kind: str, message: str) -> ValidationError:
    diags = Diagnostics(
        total_percent=table.diagnostics.total_percent,
        count=table.diagnostics.count,
        zero_weight_count=table.diagnostics.zero_weight_count,
        invalid_items=list(table.diagnostics.invalid_items),
        error_kind=kind,
        error=message,
    )
    return ValidationError(kind, message, diags)


def validate(table: WeightTable, options: ValidateOptions | None = None) -> WeightTable:
    """
    Certify a weight table before any draw. Returns the table unchanged,
    or raises ValidationError. All comparisons are in fixed-point units.
    """
    opts = options or ValidateOptions()

    if table.diagnostics.count == 0:
        raise _fail(table, EMPTY_CANDIDATE_SET, "Candidate list is empty")

    if opts.strict_positive and table.total_weight == 0:
        raise _fail(table, ZERO_TOTAL_WEIGHT, "No valid positive-weight candidates")

    if opts.require_total_100:
        tol = opts.tolerance_units
        diff = abs(table.total_weight - HUNDRED_PERCENT)
        if diff > tol:
            raise _fail(
                table, TOLERANCE_EXCEEDED,
                f"Total prob_rate ({table.diagnostics.total_percent}%) "
                f"is outside 100% ± {fixed_point_to_percent_string(tol)}%",
            )
    return table
