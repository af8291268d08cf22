import re

# Weight for each digit, starting from the rightmost one
CHECK_DIGIT_WEIGHTS = (3, 7, 13, 17, 19, 23, 29, 37, 41, 43, 47, 53, 59, 67, 71)

_NON_DIGITS = re.compile(r"\D")


def digits_only(identifier: str | None) -> str:
    return _NON_DIGITS.sub("", identifier or "")


def check_digit(identifier: str | None) -> int:
    """
    Verification digit of a tax identifier (NIT).

    Non-digits are ignored. Digits beyond the fifteenth from the right carry no
    weight. Remainders 0 and 1 are the digit itself; otherwise 11 - remainder.
    """
    digits = digits_only(identifier)
    if not digits or digits == "0":
        return 0

    total = 0
    for position, digit in enumerate(reversed(digits)):
        weight = CHECK_DIGIT_WEIGHTS[position] if position < len(CHECK_DIGIT_WEIGHTS) else 0
        total += int(digit) * weight

    remainder = total % 11
    return 11 - remainder if remainder > 1 else remainder


def with_check_digit(identifier: str | None) -> str:
    """'800197268' -> '8001972684'. Empty when the identifier has no digits."""
    digits = digits_only(identifier)
    if not digits:
        return ""
    return f"{digits}{check_digit(digits)}"
