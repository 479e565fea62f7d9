import sys
from pathlib import Path

import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.ledger import Candidate
from services.report import analyze_prob_rates, generate_recommendations, simulate_draws
from services.rng import SeededRandomSource


def packets(*rows):
    """rows: (rate, rarity) pairs."""
    return [
        Candidate(id=i, probability_text=rate, payload={"id": i, "name": f"P{i}", "item_rarity": rarity})
        for i, (rate, rarity) in enumerate(rows)
    ]


def test_empty_set_reports_no_packets():
    rep = analyze_prob_rates([])
    assert rep.total_packets == 0
    assert rep.is_balanced is False
    assert rep.warnings == ["No active packets found"]


def test_balanced_set_has_no_warnings():
    rep = analyze_prob_rates(packets(("50", "rare"), ("30", "rare"), ("20", "rare")))
    assert rep.total_packets == 3
    assert rep.total_prob_rate == pytest.approx(100.0)
    assert rep.is_balanced
    assert rep.warnings == []
    assert rep.recommendations == []
    assert [d["rarity"] for d in rep.distribution] == ["rare", "rare", "rare"]


def test_very_low_and_very_high_rates_are_flagged():
    rep = analyze_prob_rates(packets(("60", "common"), ("39.5", "rare"), ("0.5", "legendary")))
    assert rep.is_balanced
    assert "1 packets have very high prob_rate (> 50%)" in rep.warnings
    assert "1 packets have very low prob_rate (< 1%)" in rep.warnings


def test_shortfall_recommends_adding():
    rep = analyze_prob_rates(packets(("50", "rare"), ("40", "rare")))
    assert not rep.is_balanced
    assert rep.warnings[0].startswith("Total prob_rate is 90")
    assert "Add 10.00% to total prob_rate to reach 100%" in rep.recommendations


def test_overshoot_recommends_reducing():
    rep = analyze_prob_rates(packets(("60", "rare"), ("50", "rare")))
    assert "Reduce 10.00% from total prob_rate to reach 100%" in rep.recommendations


def test_tiny_imbalance_within_display_precision_is_balanced():
    rep = analyze_prob_rates(packets(("33.3333333", "rare"), ("33.3333333", "rare"), ("33.3333333", "rare")))
    assert rep.is_balanced
    assert rep.recommendations == []


def test_rarity_recommendations_use_caller_extractor():
    rows = [Candidate(id=i, probability_text="10", payload={"tier": "legendary"}) for i in range(2)]
    rows += [Candidate(id=10 + i, probability_text="10", payload={"tier": "common"}) for i in range(8)]
    rep = analyze_prob_rates(rows, rarity_of=lambda c: c.payload["tier"])
    assert rep.is_balanced
    assert "Consider reducing legendary rates (currently 10.00% average)" in rep.recommendations
    assert "Consider increasing common rates (currently 10.00% average)" in rep.recommendations


def test_unparseable_rates_count_as_zero_in_report():
    rep = analyze_prob_rates(packets(("100", "rare"), ("abc", "rare")))
    assert rep.total_prob_rate == pytest.approx(100.0)
    assert "1 packets have very low prob_rate (< 1%)" in rep.warnings


def test_simulation_tracks_stated_rates():
    data = simulate_draws(packets(("50", "a"), ("30", "b"), ("20", "c")), 20000, SeededRandomSource(5))
    assert data["failures"] == 0
    assert data["test_settings"]["random_source"] == "seeded:5"
    assert data["test_settings"]["is_balanced"]
    results = data["results"]
    assert sum(r["actual_count"] for r in results.values()) == 20000
    for r in results.values():
        assert r["actual_rate"] == pytest.approx(r["expected_rate"], abs=1.5)


def test_simulation_counts_failures_for_broken_sets():
    data = simulate_draws(packets(("50", "a"), ("40", "b")), 50, SeededRandomSource(5))
    assert data["failures"] == 50
    assert data["last_error"]["error_kind"] == "tolerance_exceeded"
    assert all(r["actual_count"] == 0 for r in data["results"].values())


def test_recommendations_from_rates_frame():
    df = pd.DataFrame([
        {"id": 1, "name": "A", "prob_rate": 8.0, "rarity": "legendary"},
        {"id": 2, "name": "B", "prob_rate": 10.0, "rarity": "common"},
    ], columns=["id", "name", "prob_rate", "rarity"])
    assert generate_recommendations(df, 18.0) == [
        "Add 82.00% to total prob_rate to reach 100%",
        "Consider reducing legendary rates (currently 8.00% average)",
        "Consider increasing common rates (currently 10.00% average)",
    ]


def test_drift_below_display_precision_gives_no_total_advice():
    empty = pd.DataFrame(columns=["id", "name", "prob_rate", "rarity"])
    assert generate_recommendations(empty, 100.004) == []
    assert generate_recommendations(empty, 99.99) == ["Add 0.01% to total prob_rate to reach 100%"]
