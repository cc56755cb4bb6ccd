"""Order number checksum (Luhn)."""
from common.error_handling import InvalidOrderNumberError, OrderNumberFormatError

DIGITS = frozenset("0123456789")

def luhn_valid(number: str) -> bool:
    """Return True when ``number`` passes the Luhn checksum.

    Raises OrderNumberFormatError for an empty string or any character
    outside ASCII 0-9.
    """
    if not number or not DIGITS.issuperset(number):
        raise OrderNumberFormatError(number)

    checksum = 0
    for distance, char in enumerate(reversed(number)):
        digit = ord(char) - ord("0")
        if distance % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        checksum += digit
    return checksum % 10 == 0

def ensure_valid_order_number(number: str) -> str:
    if not luhn_valid(number):
        raise InvalidOrderNumberError(number)
    return number
