from decimal import Decimal, ROUND_HALF_UP

# ISO 4217 exponents that differ from the usual two decimal places.
_ZERO_DECIMAL = {"BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
_THREE_DECIMAL = {"BHD", "JOD", "KWD", "OMR", "TND"}


def normalize_currency(currency: str) -> str:
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError(f"invalid currency code: {currency!r}")
    return code


def currency_exponent(currency: str) -> int:
    code = normalize_currency(currency)
    if code in _ZERO_DECIMAL:
        return 0
    if code in _THREE_DECIMAL:
        return 3
    return 2


def minor_to_decimal_string(amount_minor: int, currency: str) -> str:
    """Render minor units as the decimal string processors like PayPal expect.

    >>> minor_to_decimal_string(5175, "USD")
    '51.75'
    """
    exponent = currency_exponent(currency)
    value = Decimal(amount_minor).scaleb(-exponent)
    return str(value.quantize(Decimal(1).scaleb(-exponent)))


def decimal_string_to_minor(value: str | int, currency: str) -> int:
    exponent = currency_exponent(currency)
    amount = Decimal(str(value)).scaleb(exponent)
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))
