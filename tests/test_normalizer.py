# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

import pytest

from coreason_codematch.exceptions import EmptyNormalizationError, NormalizationEmptyResult
from coreason_codematch.normalizer import (
    CONNECTOR_WORDS,
    DOSAGE_PATTERN,
    collapse,
    normalize,
    normalize_or_fallback,
    strip_connectors,
    strip_dosage,
    strip_forms,
    strip_parentheticals,
    strip_salt_forms,
)

DISPLAY_NAMES = [
    "Amoxicillin Capsule 500 mg",
    "Amoxicillin Capsule 500 mg (as trihydrate) (Amoxil)",
    "Amoxicillin with Clavulanic Acid Tablet 875 mg-125 mg",
    "Paracetamol 500mg Tablet",
    "Salbutamol 100 micrograms/actuation inhaler",
    "Morphine Sulfate Injection 10 mg/1 mL",
    "Ibuprofen Oral Liquid 100 mg/5 mL",
    "Cholecalciferol 1.25 mg capsule",
    "Insulin Glargine 300 units/mL injection",
    "Chlorhexidine cream 1% (as gluconate)",
    "Professional attendance level B consultation",
]


def test_strip_dosage() -> None:
    assert strip_dosage("Amoxicillin 500 mg").strip() == "Amoxicillin"
    assert strip_dosage("Paracetamol 500mg").strip() == "Paracetamol"
    assert strip_dosage("Cholecalciferol 1.25 mg").strip() == "Cholecalciferol"
    assert "875" not in strip_dosage("Augmentin 875 mg-125 mg")
    assert "125" not in strip_dosage("Augmentin 875 mg-125 mg")


def test_strip_dosage_leaves_unitless_numbers() -> None:
    assert "B12" in strip_dosage("Vitamin B12 1 mg")
    assert "300" in strip_dosage("Insulin 300 units")


def test_strip_forms_whole_words_only() -> None:
    assert strip_forms("Amoxicillin Capsule").strip() == "Amoxicillin"
    assert strip_forms("Ibuprofen Oral Liquid").strip() == "Ibuprofen"
    # "creamy" is not the form word "cream"
    assert "creamy" in strip_forms("creamy lotion")


def test_strip_connectors() -> None:
    assert collapse(strip_connectors("Amoxicillin with Clavulanic Acid")) == "amoxicillin clavulanic acid"
    assert collapse(strip_connectors("Lotion containing Zinc")) == "lotion zinc"
    assert "without" in strip_connectors("without")


@pytest.mark.parametrize("word", CONNECTOR_WORDS)
def test_every_connector_word_is_stripped(word: str) -> None:
    assert collapse(strip_connectors(f"zinc {word} castor oil")) == "zinc castor oil"
    assert collapse(strip_connectors(f"Zinc {word.upper()} Castor Oil")) == "zinc castor oil"


def test_strip_salt_forms() -> None:
    assert collapse(strip_salt_forms("Cefalexin (as monohydrate)")) == "cefalexin"
    # Non-salt parentheticals are left for the next rule
    assert "(Amoxil)" in strip_salt_forms("Amoxicillin (Amoxil)")


def test_strip_parentheticals() -> None:
    assert collapse(strip_parentheticals("Amoxicillin (Amoxil)")) == "amoxicillin"


def test_collapse() -> None:
    assert collapse("  Amoxicillin    Clavulanic  ") == "amoxicillin clavulanic"


def test_normalize_amoxicillin() -> None:
    assert normalize("Amoxicillin Capsule 500 mg") == "amoxicillin"
    assert normalize("Amoxicillin Capsule 500 mg (as trihydrate) (Amoxil)") == "amoxicillin"


def test_normalize_combination_product() -> None:
    assert normalize("Amoxicillin with Clavulanic Acid Tablet 875 mg-125 mg") == "amoxicillin clavulanic acid"


def test_normalize_ignores_entity_type() -> None:
    text = "Metformin Hydrochloride Tablet 500 mg"
    assert normalize(text, "medication") == normalize(text, "procedure") == normalize(text)


@pytest.mark.parametrize("display_name", DISPLAY_NAMES)
def test_normalize_leaves_no_dosage(display_name: str) -> None:
    assert DOSAGE_PATTERN.search(normalize(display_name)) is None


@pytest.mark.parametrize("display_name", DISPLAY_NAMES)
def test_normalize_idempotent(display_name: str) -> None:
    once = normalize(display_name)
    assert normalize(once) == once


def test_normalize_fixed_point_after_parenthetical_removal() -> None:
    # Dropping the parenthetical brings "5" and "mg" next to each other.
    result = normalize("Drug 5 (x) mg")
    assert DOSAGE_PATTERN.search(result) is None
    assert normalize(result) == result


def test_normalize_empty_raises() -> None:
    with pytest.raises(EmptyNormalizationError) as exc_info:
        normalize("Tablet 500 mg")
    assert exc_info.value.display_name == "Tablet 500 mg"
    assert EmptyNormalizationError is NormalizationEmptyResult


def test_normalize_blank_raises() -> None:
    with pytest.raises(EmptyNormalizationError):
        normalize("   ")


def test_normalize_or_fallback() -> None:
    assert normalize_or_fallback("Amoxicillin Capsule 500 mg") == "amoxicillin"
    assert normalize_or_fallback("Tablet 500 mg") == "tablet 500 mg"
    assert normalize_or_fallback("   ") == ""
