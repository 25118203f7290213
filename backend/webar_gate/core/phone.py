import re

from webar_gate.core.config import settings
from webar_gate.core.errors import InvalidPhoneNumber


_NON_DIGITS = re.compile(r"\D")
_INTERNATIONAL = re.compile(r"^\+?[1-9]\d{7,14}$")


def normalize_phone(raw: str, default_country_code: str | None = None) -> str:
    """Normalize user input to an E.164 phone number.

    Accepts:
      - '+976XXXXXXXX' as-is
      - 8 bare digits (spaces/dashes allowed) -> '+976' + digits
      - any other '+?[1-9]' followed by 7-14 digits -> prefixed with '+'

    Raises InvalidPhoneNumber for anything else; nothing is logged or sent.
    """
    cc = default_country_code or settings.default_country_code
    s = (raw or "").strip()
    digits = _NON_DIGITS.sub("", s)

    if re.fullmatch(rf"\+{cc}\d{{8}}", s):
        return s
    if len(digits) == 8 and not s.startswith("+"):
        return f"+{cc}{digits}"
    if _INTERNATIONAL.match(s):
        return s if s.startswith("+") else f"+{s}"
    raise InvalidPhoneNumber(f"invalid phone number: {raw!r}")
