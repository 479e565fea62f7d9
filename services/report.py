# services/report.py
"""
Advisory prob_rate reports for admin tooling.

Nothing here feeds a purchase decision, so plain floats are fine for the
sums and averages. The exact pass/fail gate lives in services.ledger.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

import pandas as pd

from services.ledger import Candidate, ValidateOptions
from services.rng import RandomSource, default_random_source
from services.selector import get_weighted_random_packet
from services.utils import canonical_rarity

CONFIG = json.loads(Path(__file__).resolve().parent.parent.joinpath("config.json").read_text(encoding="utf-8"))
REPORT_CFG = CONFIG.get("report", {})


@dataclass
class DistributionReport:
    total_packets: int
    total_prob_rate: float
    is_balanced: bool
    distribution: list[dict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_packets": self.total_packets,
            "total_prob_rate": self.total_prob_rate,
            "is_balanced": self.is_balanced,
            "distribution": self.distribution,
            "warnings": self.warnings,
            "recommendations": self.recommendations,
        }


def _rate(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _payload_field(payload, key: str):
    return payload.get(key) if isinstance(payload, dict) else None


def default_rarity_of(c: Candidate) -> str:
    return canonical_rarity(_payload_field(c.payload, "item_rarity"))


def _rates_frame(candidates: Sequence[Candidate], rarity_of: Callable[[Candidate], Any]) -> pd.DataFrame:
    rows = [{
        "id": c.id,
        "name": _payload_field(c.payload, "name"),
        "prob_rate": _rate(c.probability_text),
        "rarity": str(rarity_of(c) or "unknown"),
    } for c in candidates]
    return pd.DataFrame(rows, columns=["id", "name", "prob_rate", "rarity"])


def generate_recommendations(df: pd.DataFrame, total: float) -> list[str]:
    recs: list[str] = []
    difference = 100.0 - total
    if round(difference, 2) != 0:
        if difference > 0:
            recs.append(f"Add {difference:.2f}% to total prob_rate to reach 100%")
        else:
            recs.append(f"Reduce {abs(difference):.2f}% from total prob_rate to reach 100%")

    if df.empty:
        return recs
    legendary_max = float(REPORT_CFG.get("legendary_avg_max", 5))
    common_min = float(REPORT_CFG.get("common_avg_min", 20))
    averages = df.groupby("rarity", sort=False)["prob_rate"].mean()
    for rarity, avg in averages.items():
        if rarity == "legendary" and avg > legendary_max:
            recs.append(f"Consider reducing legendary rates (currently {avg:.2f}% average)")
        elif rarity == "common" and avg < common_min:
            recs.append(f"Consider increasing common rates (currently {avg:.2f}% average)")
    return recs


def analyze_prob_rates(
    candidates: Sequence[Candidate],
    rarity_of: Callable[[Candidate], Any] | None = None,
) -> DistributionReport:
    """Balance report over the active draw-set, grouped by a caller-chosen rarity tag."""
    if not candidates:
        return DistributionReport(0, 0.0, False, warnings=["No active packets found"])

    df = _rates_frame(candidates, rarity_of or default_rarity_of)
    total = float(df["prob_rate"].sum())
    epsilon = float(REPORT_CFG.get("balance_epsilon", 0.01))
    low = float(REPORT_CFG.get("very_low_rate", 1))
    high = float(REPORT_CFG.get("very_high_rate", 50))

    is_balanced = abs(total - 100.0) < epsilon
    warnings: list[str] = []
    if not is_balanced:
        warnings.append(f"Total prob_rate is {total:g}%, should be 100%")
    n_low = int((df["prob_rate"] < low).sum())
    if n_low:
        warnings.append(f"{n_low} packets have very low prob_rate (< {low:g}%)")
    n_high = int((df["prob_rate"] > high).sum())
    if n_high:
        warnings.append(f"{n_high} packets have very high prob_rate (> {high:g}%)")

    distribution = [
        {"id": r["id"], "name": r["name"], "prob_rate": r["prob_rate"], "rarity": r["rarity"]}
        for r in df.to_dict(orient="records")
    ]
    return DistributionReport(
        total_packets=len(df),
        total_prob_rate=total,
        is_balanced=is_balanced,
        distribution=distribution,
        warnings=warnings,
        recommendations=generate_recommendations(df, total),
    )


def simulate_draws(
    candidates: Sequence[Candidate],
    iterations: int,
    source: RandomSource | None = None,
    options: ValidateOptions | None = None,
) -> dict:
    """Run independent draws and compare observed frequencies with stated rates."""
    src = source or default_random_source()
    results = {
        str(c.id): {
            "name": _payload_field(c.payload, "name"),
            "expected_rate": _rate(c.probability_text),
            "actual_count": 0,
            "actual_rate": 0.0,
        }
        for c in candidates
    }
    failures = 0
    last_error = None
    for _ in range(iterations):
        res = get_weighted_random_packet(candidates, options, src)
        if res.ok:
            results[str(res.candidate.id)]["actual_count"] += 1
        else:
            failures += 1
            last_error = res.diagnostics.to_dict()

    if iterations > 0:
        for row in results.values():
            row["actual_rate"] = round(row["actual_count"] * 100.0 / iterations, 4)

    total = sum(_rate(c.probability_text) for c in candidates)
    return {
        "test_settings": {
            "iterations": iterations,
            "total_packets": len(candidates),
            "total_prob_rate": total,
            "is_balanced": abs(total - 100.0) < float(REPORT_CFG.get("balance_epsilon", 0.01)),
            "random_source": src.name,
        },
        "results": results,
        "failures": failures,
        "last_error": last_error,
    }
