# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

"""
Text normalization for catalog display names.

Turns a verbose formulary/billing label such as
"Amoxicillin Capsule 500 mg (as trihydrate) (Amoxil)" into the compact
ingredient-style string "amoxicillin" that is embedded and compared.

Rules are applied in a fixed order and repeated until the text stops changing,
so normalize(normalize(x)) == normalize(x).
"""

import re
from typing import Callable, List, Optional

from loguru import logger

from coreason_codematch.exceptions import EmptyNormalizationError

UNIT = r"(?:mg|g|ml|mcg|micrograms?|milligrams?)"
AMOUNT = r"\d+(?:\.\d+)?\s*" + UNIT

DOSAGE_PATTERN = re.compile(rf"{AMOUNT}(?:\s*-\s*{AMOUNT})?\b", re.IGNORECASE)

FORM_WORDS = (
    "tablet",
    "capsule",
    "injection",
    "syrup",
    "cream",
    "ointment",
    "oral liquid",
    "suppository",
    "pessary",
    "powder",
    "solution",
    "suspension",
)
FORM_PATTERN = re.compile(r"\b(?:" + "|".join(re.escape(w) for w in FORM_WORDS) + r")\b", re.IGNORECASE)

CONNECTOR_WORDS = ("containing", "with")
CONNECTOR_PATTERN = re.compile(r"\b(?:" + "|".join(re.escape(w) for w in CONNECTOR_WORDS) + r")\b", re.IGNORECASE)

SALT_PATTERN = re.compile(r"\(\s*as\s[^()]*\)", re.IGNORECASE)
PARENTHETICAL_PATTERN = re.compile(r"\([^()]*\)")
WHITESPACE_PATTERN = re.compile(r"\s+")


def strip_dosage(text: str) -> str:
    return DOSAGE_PATTERN.sub(" ", text)


def strip_forms(text: str) -> str:
    return FORM_PATTERN.sub(" ", text)


def strip_connectors(text: str) -> str:
    return CONNECTOR_PATTERN.sub(" ", text)


def strip_salt_forms(text: str) -> str:
    return SALT_PATTERN.sub(" ", text)


def strip_parentheticals(text: str) -> str:
    return PARENTHETICAL_PATTERN.sub(" ", text)


def collapse(text: str) -> str:
    return WHITESPACE_PATTERN.sub(" ", text).strip().lower()


RULES: List[Callable[[str], str]] = [
    strip_dosage,
    strip_forms,
    strip_connectors,
    strip_salt_forms,
    strip_parentheticals,
    collapse,
]


def _apply_rules(text: str) -> str:
    for rule in RULES:
        text = rule(text)
    return text


def normalize(display_name: str, entity_type: Optional[str] = None) -> str:
    """
    Normalizes a display name into embedding-ready text.

    Args:
        display_name: The authoritative catalog label.
        entity_type: Accepted for the caller's convenience; rules do not depend on it.

    Raises:
        EmptyNormalizationError: if nothing survives normalization.
    """
    text = _apply_rules(display_name)
    # Removing a parenthetical can join a number and a unit, so run to a fixed point.
    while True:
        again = _apply_rules(text)
        if again == text:
            break
        text = again

    if not text:
        raise EmptyNormalizationError(display_name)
    return text


def normalize_or_fallback(display_name: str, entity_type: Optional[str] = None) -> str:
    """
    Normalizes, falling back to the lowercased display name when the rules
    strip everything. Returns "" only for a blank display name.
    """
    try:
        return normalize(display_name, entity_type)
    except EmptyNormalizationError:
        fallback = display_name.lower()
        logger.debug(f"Empty normalization for {display_name!r} ({entity_type}), using raw text")
        return fallback if fallback.strip() else ""
