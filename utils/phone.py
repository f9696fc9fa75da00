"""
Vietnamese mobile number validation.

Accepts the domestic form (0xxxxxxxxx) and the international form
(+84xxxxxxxxx), tolerating spaces, hyphens, parentheses and periods.
Every valid number is reduced to the 10-digit domestic form and classified
by carrier from its first three digits.
"""
from __future__ import annotations

import re
from typing import Any, Optional

from models.schemas import (
    PhoneErrorKind, PhoneFormats, PhoneValidationResult,
    ProgressiveResult, ProgressiveStatus,
)


CARRIER_PREFIXES: dict[str, frozenset[str]] = {
    "viettel": frozenset({
        "032", "033", "034", "035", "036", "037", "038", "039",
        "086", "096", "097", "098",
    }),
    "vinaphone": frozenset({"081", "082", "083", "084", "085", "088", "091", "094"}),
    "mobifone": frozenset({"070", "076", "077", "078", "079", "089", "090", "093"}),
    "vietnamobile": frozenset({"052", "056", "058", "092"}),
    "gmobile": frozenset({"059", "099"}),
}

CARRIER_NAMES = {
    "viettel": "Viettel",
    "vinaphone": "Vinaphone",
    "mobifone": "Mobifone",
    "vietnamobile": "Vietnamobile",
    "gmobile": "Gmobile",
}

_PREFIX_TO_CARRIER = {
    prefix: carrier
    for carrier, prefixes in CARRIER_PREFIXES.items()
    for prefix in prefixes
}

DOMESTIC_LENGTH = 10
INTL_LENGTH = 12

_STRIP_RE = re.compile(r"[\s\-().]")
_FORMAT_RE = re.compile(r"^(\+84|0)[0-9]+$")

ERROR_MESSAGES = {
    PhoneErrorKind.EMPTY: "Please enter your phone number.",
    PhoneErrorKind.BAD_CHARACTERS: "Use digits only, starting with 0 or +84.",
    PhoneErrorKind.BAD_PREFIX: "The number must start with 0 or +84.",
    PhoneErrorKind.BAD_LENGTH_INTL: "A number starting with +84 must have 12 characters.",
    PhoneErrorKind.BAD_LENGTH_DOMESTIC: "A number starting with 0 must have 10 digits.",
    PhoneErrorKind.UNASSIGNED_PREFIX: "That prefix does not belong to a Vietnamese mobile network.",
}

ERROR_SUGGESTIONS = {
    PhoneErrorKind.EMPTY: ["Type a number like 0912 345 678"],
    PhoneErrorKind.BAD_CHARACTERS: ["Remove letters and symbols", "Start with 0 or +84, e.g. 0912345678"],
    PhoneErrorKind.BAD_PREFIX: ["Start with 0, e.g. 0912345678", "Or with +84, e.g. +84912345678"],
    PhoneErrorKind.BAD_LENGTH_INTL: ["+84 followed by 9 digits, e.g. +84912345678"],
    PhoneErrorKind.BAD_LENGTH_DOMESTIC: ["0 followed by 9 digits, e.g. 0912345678"],
    PhoneErrorKind.UNASSIGNED_PREFIX: ["Check the first three digits", "Viettel: 03x, 086, 096-098"],
}


def clean(raw: str) -> str:
    """Drop the separators people type between digit groups."""
    return _STRIP_RE.sub("", raw)


def standardize(cleaned: str) -> str:
    """+84xxxxxxxxx -> 0xxxxxxxxx; domestic input is returned unchanged."""
    if cleaned.startswith("+84"):
        return "0" + cleaned[3:]
    return cleaned


def carrier_for(standardized: str) -> Optional[str]:
    return _PREFIX_TO_CARRIER.get(standardized[:3])


def _fail(raw: Any, cleaned: str, kind: PhoneErrorKind) -> PhoneValidationResult:
    return PhoneValidationResult(
        is_valid=False,
        raw_input=raw,
        cleaned_input=cleaned,
        error_kind=kind,
        error=ERROR_MESSAGES[kind],
    )


def validate(raw: Any) -> PhoneValidationResult:
    """Full validation of a submitted number."""
    if not isinstance(raw, str) or not raw.strip():
        return _fail(raw, "", PhoneErrorKind.EMPTY)

    cleaned = clean(raw)
    if not _FORMAT_RE.match(cleaned):
        return _fail(raw, cleaned, PhoneErrorKind.BAD_CHARACTERS)

    if cleaned.startswith("+84"):
        if len(cleaned) != INTL_LENGTH:
            return _fail(raw, cleaned, PhoneErrorKind.BAD_LENGTH_INTL)
    elif cleaned.startswith("0"):
        if len(cleaned) != DOMESTIC_LENGTH:
            return _fail(raw, cleaned, PhoneErrorKind.BAD_LENGTH_DOMESTIC)
    else:
        return _fail(raw, cleaned, PhoneErrorKind.BAD_PREFIX)

    standardized = standardize(cleaned)
    network = carrier_for(standardized)
    if network is None:
        return _fail(raw, cleaned, PhoneErrorKind.UNASSIGNED_PREFIX)

    return PhoneValidationResult(
        is_valid=True,
        raw_input=raw,
        cleaned_input=cleaned,
        standardized_form=standardized,
        network_class=network,
    )


def _possible_prefix(cleaned: str) -> Optional[int]:
    """
    Digits still missing when `cleaned` can grow into a valid number,
    otherwise None.
    """
    if re.match(r"^0\d*$", cleaned) and len(cleaned) < DOMESTIC_LENGTH:
        canonical, target = cleaned, DOMESTIC_LENGTH
    elif re.match(r"^\+84\d*$", cleaned) and len(cleaned) < INTL_LENGTH:
        canonical, target = "0" + cleaned[3:], INTL_LENGTH
    else:
        return None

    if len(canonical) >= 3 and carrier_for(canonical) is None:
        return None
    return target - len(cleaned)


def validate_progressive(raw: Any) -> ProgressiveResult:
    """
    As-you-type feedback. Anything that can still become a valid number is
    reported as neutral; the full validator decides everything else.
    """
    if not isinstance(raw, str) or not raw.strip():
        return ProgressiveResult(status=ProgressiveStatus.NEUTRAL, hint="")

    cleaned = clean(raw)
    if len(cleaned) < 3:
        return ProgressiveResult(status=ProgressiveStatus.NEUTRAL, hint="Keep typing...")

    remaining = _possible_prefix(cleaned)
    if remaining is not None:
        unit = "digit" if remaining == 1 else "digits"
        return ProgressiveResult(
            status=ProgressiveStatus.NEUTRAL, hint=f"{remaining} more {unit}",
        )

    result = validate(raw)
    if result.is_valid:
        return ProgressiveResult(
            status=ProgressiveStatus.VALID,
            hint=f"{CARRIER_NAMES[result.network_class]} - {_display(result.standardized_form)}",
            standardized_form=result.standardized_form,
        )
    return ProgressiveResult(status=ProgressiveStatus.INVALID, hint=result.error)


def _display(standardized: str) -> str:
    return f"{standardized[:4]} {standardized[4:7]} {standardized[7:]}"


def format_phone(raw: Any) -> Optional[PhoneFormats]:
    """Canonical, international and display forms of a valid number."""
    result = validate(raw)
    if not result.is_valid:
        return None
    std = result.standardized_form
    return PhoneFormats(
        standard=std,
        international="+84" + std[1:],
        display=_display(std),
    )


def error_suggestions(kind: Optional[PhoneErrorKind]) -> list[str]:
    if kind is None:
        return []
    return list(ERROR_SUGGESTIONS.get(kind, []))
