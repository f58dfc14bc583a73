"""Phone number normalization.

Mexican WhatsApp ids carry the mobile indicator ``1`` after the country
code (``521`` + 10 digits), while numbers typed by staff usually do not
(``52`` + 10 digits, or the bare 10-digit national number). All lookups
go through the canonical 13-digit form so that a client typed as
``55 1234 5678`` and a webhook from ``5215512345678`` meet on the same
conversation.

None of these functions raise; unknown shapes pass through best-effort.
"""

from __future__ import annotations

import re

MX_COUNTRY_CODE = "52"
MX_MOBILE_PREFIX = "521"

E164_MIN_DIGITS = 11
E164_MAX_DIGITS = 15

_SEPARATORS = re.compile(r"[\s\-().]")
_MX_WITHOUT_MOBILE = re.compile(r"^52\d{10}$")
_MX_WITH_MOBILE = re.compile(r"^521\d{10}$")
_NATIONAL = re.compile(r"^\d{10}$")
_DIGITS = re.compile(r"^\d+$")


def _strip(raw: str | None) -> str:
    return _SEPARATORS.sub("", str(raw or "")).lstrip("+")


def normalize_phone(raw: str | None) -> str:
    """Canonical digits for a phone string.

    Separators and a leading ``+`` are removed. ``52`` followed by ten
    digits gains the mobile indicator. Anything else is returned stripped
    but otherwise unchanged. Idempotent.
    """
    value = _strip(raw)
    if _MX_WITHOUT_MOBILE.match(value):
        return MX_MOBILE_PREFIX + value[2:]
    return value


def normalize_phone_strict(raw: str | None) -> str:
    """Validated ``+digits`` form, or ``""`` when the input is not a phone.

    Accepts 10-digit Mexican national numbers, ``52``/``521`` numbers, and
    other international numbers written with a leading ``+``.
    """
    text = str(raw or "").strip()
    value = _strip(text)
    if not _DIGITS.match(value):
        return ""

    if _NATIONAL.match(value):
        return "+" + MX_MOBILE_PREFIX + value
    if _MX_WITHOUT_MOBILE.match(value) or _MX_WITH_MOBILE.match(value):
        return "+" + normalize_phone(value)
    if text.startswith("+") and E164_MIN_DIGITS <= len(value) <= E164_MAX_DIGITS:
        return "+" + value
    return ""


def normalize_phone_loose(raw: str | None) -> str:
    """Contact key for a phone: ``+`` and canonical digits, ``""`` if empty.

    Agrees with ``normalize_phone_strict`` whenever that accepts the input.
    """
    strict = normalize_phone_strict(raw)
    if strict:
        return strict
    value = normalize_phone(raw)
    if not value:
        return ""
    return "+" + value


def phone_candidates(raw: str | None) -> list[str]:
    """Every stored spelling that may refer to the same number.

    Older rows were written before normalization existed, so lookups try
    each variant. The canonical contact key comes first.
    """
    out: list[str] = []

    def add(value: str) -> None:
        if value and value not in out:
            out.append(value)

    add(normalize_phone_loose(raw))
    digits = normalize_phone(raw)
    if not _DIGITS.match(digits or "x"):
        return out

    national: str | None = None
    if _MX_WITH_MOBILE.match(digits):
        national = digits[3:]
    elif _NATIONAL.match(digits):
        national = digits

    if national is not None:
        for value in (
            "+" + MX_MOBILE_PREFIX + national,
            MX_MOBILE_PREFIX + national,
            "+" + MX_COUNTRY_CODE + national,
            MX_COUNTRY_CODE + national,
            national,
        ):
            add(value)
    else:
        add("+" + digits)
        add(digits)
    return out


def format_phone_for_display(raw: str | None) -> str:
    """``(XXX) XXX-XXXX`` for Mexican numbers, ``+digits`` otherwise."""
    digits = normalize_phone(raw)
    if not digits:
        return ""
    if _MX_WITH_MOBILE.match(digits):
        digits = digits[3:]
    if _NATIONAL.match(digits):
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    if _DIGITS.match(digits):
        return "+" + digits
    return str(raw).strip()
