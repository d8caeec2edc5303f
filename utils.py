import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

DEFAULT_COUNTRY_CODE = "+1"

_PHONE_RE = re.compile(r"^\+?\d{7,15}$")


def normalize_phone(value: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Canonical form used as the participant identity.

    Keeps digits and a leading ``+``; a bare 10-digit national number gets
    the default country prefix. Applying it twice gives the same result.
    """
    cleaned = re.sub(r"[^\d+]", "", str(value or ""))
    digits = cleaned.replace("+", "")
    if cleaned.startswith("+"):
        return "+" + digits
    if len(digits) == 10:
        return country_code + digits
    return digits


def is_valid_phone(value: str) -> bool:
    return bool(_PHONE_RE.match(normalize_phone(value)))


def format_phone(phone: str) -> str:
    if phone.startswith("+1") and len(phone) == 12:
        number = phone[2:]
        return f"({number[:3]}) {number[3:6]}-{number[6:]}"
    return phone


def format_currency(amount_minor: int, symbol: str = "$") -> str:
    sign = "-" if amount_minor < 0 else ""
    dollars, cents = divmod(abs(amount_minor), 100)
    return f"{sign}{symbol}{dollars}.{cents:02d}"


def format_currency_input(amount_minor: int) -> str:
    sign = "-" if amount_minor < 0 else ""
    dollars, cents = divmod(abs(amount_minor), 100)
    return f"{sign}{dollars}.{cents:02d}"


def parse_currency(amount_str: str) -> int:
    cleaned = str(amount_str).replace(',', '.').replace('$', '').strip()

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError("Invalid amount format")

    if not amount.is_finite():
        raise ValueError("Invalid amount format")

    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
