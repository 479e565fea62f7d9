# services/fixed_point.py
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

# 10^7 units per 1% -> 7 fractional digits of percentage precision
SCALE_DIGITS = 7
UNITS_PER_PERCENT = 10 ** SCALE_DIGITS
HUNDRED_PERCENT = 100 * UNITS_PER_PERCENT

_RATE_RE = re.compile(r"(-?)([0-9]+)(?:\.([0-9]+))?")

MALFORMED = "malformed"
NEGATIVE = "negative"


def _rate_text(value) -> str | None:
    """Render a prob_rate value as plain decimal text, or None if it can't be one."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float, Decimal)):
        try:
            d = Decimal(str(value))
        except InvalidOperation:
            return None
        if not d.is_finite():
            return None
        return format(d, "f")          # never scientific notation
    return None


def classify_rate(value) -> tuple[int, str | None]:
    """
    Parse a prob_rate into fixed-point units.

    Returns (units, reason) where reason is None for a usable rate,
    MALFORMED when the text isn't [-]digits[.digits], or NEGATIVE when it
    parsed but is below zero. Units are clamped to >= 0 in every case.
    Fractional digits past the 7th are truncated, never rounded.
    """
    s = _rate_text(value)
    if not s:
        return 0, MALFORMED
    m = _RATE_RE.fullmatch(s)
    if not m:
        return 0, MALFORMED
    sign, int_part, frac_part = m.group(1), m.group(2), m.group(3) or ""
    frac_part = (frac_part + "0" * SCALE_DIGITS)[:SCALE_DIGITS]
    units = int(int_part) * UNITS_PER_PERCENT + int(frac_part)
    if sign and units > 0:
        return 0, NEGATIVE
    return units, None


def parse_to_fixed_point(value) -> int:
    """'12.5' -> 125000000. Anything unparseable or negative is 0."""
    units, _ = classify_rate(value)
    return units


def fixed_point_to_percent_string(units: int) -> str:
    """125000000 -> '12.5000000' (exact, integer arithmetic only)."""
    sign = "-" if units < 0 else ""
    whole, frac = divmod(abs(int(units)), UNITS_PER_PERCENT)
    return f"{sign}{whole}.{frac:0{SCALE_DIGITS}d}"


def percent_to_units(percent) -> int:
    """
    Convert a percentage (str/int/float/Decimal) to fixed-point units,
    rounding half-up at the 7th decimal. Used for tolerances.
    """
    text = _rate_text(percent)
    if text is None:
        raise ValueError(f"Invalid percentage: {percent!r}")
    try:
        d = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Invalid percentage: {percent!r}") from None
    if not d.is_finite():
        raise ValueError(f"Invalid percentage: {percent!r}")
    units = (d * UNITS_PER_PERCENT).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    if units < 0:
        raise ValueError(f"Percentage must be non-negative: {percent!r}")
    return int(units)
