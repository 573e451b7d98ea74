"""Phone number and email helpers."""

from __future__ import annotations

import re

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def normalize_phone(raw: str) -> str | None:
    """Return *raw* in E.164 form, or ``None`` if it cannot be coerced.

    Ten-digit numbers without a country code are assumed to be North
    American and get ``+1``.
    """
    candidate = raw.strip()
    if E164_PATTERN.match(candidate):
        return candidate

    digits = re.sub(r"\D", "", candidate)
    if len(digits) == 10:
        digits = "1" + digits
    candidate = "+" + digits
    if not E164_PATTERN.match(candidate):
        return None
    return candidate


def mask_phone(phone: str) -> str:
    """Hide all but the last four digits: ``+1555***4567``."""
    if len(phone) <= 8:
        return phone[:2] + "***"
    return f"{phone[:5]}***{phone[-4:]}"


def mask_email(email: str) -> str:
    """Mask an email for display: ``jo***@example.com``."""
    local, _, domain = email.partition("@")
    masked_local = f"{local[:2]}***" if len(local) > 2 else "***"
    return f"{masked_local}@{domain}"
