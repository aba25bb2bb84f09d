from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN, ROUND_HALF_UP

ONE = Decimal('1')


def to_cents(amount) -> int:
    """Convert a dollar amount ('12.50', 12.5, '$1,200') to integer cents."""
    if amount is None or amount == '':
        return 0
    text = str(amount).replace('$', '').replace(',', '').strip()
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount}")
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount}")
    return int((value * 100).quantize(ONE, rounding=ROUND_HALF_UP))


def from_cents(cents) -> Decimal:
    return (Decimal(int(cents or 0)) / 100).quantize(Decimal('0.01'))


def multiply_cents(cents, factor) -> int:
    """Multiply a cent amount, rounding half to even."""
    result = Decimal(int(cents)) * Decimal(str(factor))
    return int(result.quantize(ONE, rounding=ROUND_HALF_EVEN))


def sum_cents(values) -> int:
    return sum(int(v or 0) for v in values)


def format_money(cents) -> str:
    if cents is None:
        return ''
    cents = int(cents)
    sign = '-' if cents < 0 else ''
    return f"{sign}${from_cents(abs(cents)):,.2f}"
