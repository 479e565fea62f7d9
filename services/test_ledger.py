import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.ledger import (
    EMPTY_CANDIDATE_SET,
    TOLERANCE_EXCEEDED,
    ZERO_TOTAL_WEIGHT,
    Candidate,
    ValidateOptions,
    ValidationError,
    build_weight_table,
    candidates_from_packets,
    validate,
)


def cands(*rates):
    return [Candidate(id=i, probability_text=r, payload={"id": i}) for i, r in enumerate(rates)]


def test_invalid_entries_excluded_but_reported():
    table = build_weight_table(cands("50", "abc", "50"))
    assert table.total_weight == 1000000000
    assert [e.index for e in table.entries] == [0, 2]
    d = table.diagnostics
    assert d.total_percent == "100.0000000"
    assert d.count == 3
    assert d.zero_weight_count == 1
    assert [(i.index, i.raw, i.reason) for i in d.invalid_items] == [(1, "abc", "malformed")]
    assert validate(table) is table


def test_negative_rate_is_zero_weight_and_reported():
    table = build_weight_table(cands("-5", "100"))
    assert table.total_weight == 1000000000
    assert [(i.index, i.reason) for i in table.diagnostics.invalid_items] == [(0, "negative")]
    assert table.diagnostics.zero_weight_count == 1


def test_zero_rate_counts_as_zero_weight_without_being_invalid():
    table = build_weight_table(cands("0", "100"))
    assert table.diagnostics.zero_weight_count == 1
    assert table.diagnostics.invalid_items == []
    assert len(table) == 1


def test_exact_hundred_from_thirds_passes():
    table = build_weight_table(cands("33.3333333", "33.3333333", "33.3333334"))
    assert table.total_weight == 1000000000
    assert validate(table) is table


def test_small_shortfall_inside_default_tolerance():
    # 99.9999996% is 4 units short; the default 0.000001% allows 10
    table = build_weight_table(cands("33.3333333", "33.3333333", "33.3333330"))
    assert table.diagnostics.total_percent == "99.9999996"
    assert validate(table) is table


def test_shortfall_beyond_tighter_tolerance_is_rejected():
    table = build_weight_table(cands("33.3333333", "33.3333333", "33.3333330"))
    with pytest.raises(ValidationError) as exc:
        validate(table, ValidateOptions(tolerance="0.0000003"))
    assert exc.value.kind == TOLERANCE_EXCEEDED
    assert exc.value.diagnostics.error_kind == TOLERANCE_EXCEEDED
    assert exc.value.diagnostics.total_percent == "99.9999996"
    assert "99.9999996" in exc.value.message


def test_one_unit_off_fails_with_zero_tolerance():
    table = build_weight_table(cands("33.3333333", "33.3333333", "33.3333333"))
    validate(table)
    with pytest.raises(ValidationError) as exc:
        validate(table, ValidateOptions(tolerance="0"))
    assert exc.value.kind == TOLERANCE_EXCEEDED


def test_overshoot_is_rejected():
    table = build_weight_table(cands("60", "50"))
    with pytest.raises(ValidationError) as exc:
        validate(table)
    assert exc.value.kind == TOLERANCE_EXCEEDED


def test_total_check_can_be_disabled():
    table = build_weight_table(cands("50", "40"))
    assert validate(table, ValidateOptions(require_total_100=False)) is table


@pytest.mark.parametrize("opts", [
    ValidateOptions(),
    ValidateOptions(require_total_100=False),
    ValidateOptions(strict_positive=False),
    ValidateOptions(require_total_100=False, strict_positive=False),
])
def test_empty_set_always_fails(opts):
    with pytest.raises(ValidationError) as exc:
        validate(build_weight_table([]), opts)
    assert exc.value.kind == EMPTY_CANDIDATE_SET


def test_zero_total_fails_when_strict():
    table = build_weight_table(cands("0", "abc"))
    with pytest.raises(ValidationError) as exc:
        validate(table)
    assert exc.value.kind == ZERO_TOTAL_WEIGHT
    assert exc.value.diagnostics.count == 2
    assert exc.value.diagnostics.zero_weight_count == 2
    assert len(exc.value.diagnostics.invalid_items) == 1


def test_zero_total_allowed_when_checks_are_off():
    table = build_weight_table(cands("0"))
    opts = ValidateOptions(require_total_100=False, strict_positive=False)
    assert validate(table, opts) is table


def test_validation_is_idempotent_and_leaves_table_untouched():
    table = build_weight_table(cands("50", "40"))
    kinds = []
    for _ in range(2):
        with pytest.raises(ValidationError) as exc:
            validate(table)
        kinds.append(exc.value.kind)
    assert kinds == [TOLERANCE_EXCEEDED, TOLERANCE_EXCEEDED]
    assert table.diagnostics.error_kind is None

    ok_table = build_weight_table(cands("50", "50"))
    assert validate(ok_table) is validate(ok_table)


def test_diagnostics_to_dict_carries_error_details():
    table = build_weight_table(cands("10", "xyz"))
    with pytest.raises(ValidationError) as exc:
        validate(table)
    d = exc.value.diagnostics.to_dict()
    assert d["total_percent"] == "10.0000000"
    assert d["count"] == 2
    assert d["invalid_items"] == [{"index": 1, "prob_rate": "xyz", "reason": "malformed"}]
    assert d["error_kind"] == TOLERANCE_EXCEEDED
    assert d["error"]


def test_candidates_from_packets_keeps_row_as_payload():
    rows = [{"id": 7, "prob_rate": "12.5", "name": "Gold"}, {"id": 8, "name": "Missing rate"}]
    out = candidates_from_packets(rows)
    assert [c.id for c in out] == [7, 8]
    assert out[0].probability_text == "12.5"
    assert out[0].payload is rows[0]
    assert out[1].probability_text is None


def test_options_from_config():
    opts = ValidateOptions.from_config({"require_total_100": False, "tolerance_percent": "0.001"})
    assert opts.require_total_100 is False
    assert opts.strict_positive is True
    assert opts.tolerance_units == 10000
    assert ValidateOptions.from_config(None).tolerance_units == 10
