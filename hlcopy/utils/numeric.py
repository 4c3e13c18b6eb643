from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union

Number = Union[str, int, float, Decimal]

SIZE_QUANTUM = Decimal("0.00000001")  # 8 dp


def to_decimal(value: Number) -> Decimal:
    """Parse an exchange numeric (usually a decimal string) into a Decimal."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, float):
        # repr keeps the shortest round-tripping digits, not the binary expansion
        value = repr(value)
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValueError(f"not a number: {value!r}") from exc


def canonical_decimal(value: Number) -> str:
    """Render a number without trailing zeros or a trailing decimal point.

    The exchange rejects ``"1.50"`` and ``"2."``; it wants ``"1.5"`` and ``"2"``.
    Exponent notation is never produced.
    """
    d = to_decimal(value)
    if not d.is_finite():
        raise ValueError(f"cannot canonicalize non-finite value {value!r}")
    if d == 0:
        return "0"
    text = format(d, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def quantize_size(value: Decimal, quantum: Decimal = SIZE_QUANTUM) -> Decimal:
    return value.quantize(quantum, rounding=ROUND_DOWN)


def is_positive_finite(value: Decimal) -> bool:
    return value.is_finite() and value > 0
