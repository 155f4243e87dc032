"""
Tests for detail merging, the missing-information policy and the checklist.
"""

import pytest

from healthbay.details import (
    ClarificationPolicy,
    add_symptoms,
    describe_missing,
    is_generic_pain,
    merge_details,
    missing_fields,
    symptom_checklist,
)
from healthbay.models import InjuryDetails, Severity


def test_merge_keeps_existing_when_new_value_is_sentinel():
    existing = InjuryDetails(body_part="knee", duration="2 days")
    extracted = InjuryDetails(body_part="unknown", duration="Not specified")

    merged = merge_details(existing, extracted)

    assert merged.body_part == "knee"
    assert merged.duration == "2 days"


def test_merge_replaces_with_real_value():
    merged = merge_details(InjuryDetails(body_part="knee"), InjuryDetails(body_part="left knee"))
    assert merged.body_part == "left knee"


def test_merge_unions_symptoms_in_order():
    existing = InjuryDetails(symptoms=["swelling", "sharp pain"])
    extracted = InjuryDetails(symptoms=["sharp pain", "bruising"])

    merged = merge_details(existing, extracted)

    assert merged.symptoms == ["swelling", "sharp pain", "bruising"]


def test_merge_is_idempotent():
    a = InjuryDetails(body_part="ankle", symptoms=["swelling"], severity="moderate")
    b = InjuryDetails(symptoms=["bruising"], duration="3 days", mechanism="rolled it")

    once = merge_details(a, b)
    twice = merge_details(once, b)

    assert once == twice


def test_merge_does_not_mutate_inputs():
    a = InjuryDetails(symptoms=["swelling"])
    b = InjuryDetails(symptoms=["bruising"])
    merge_details(a, b)
    assert a.symptoms == ["swelling"]
    assert b.symptoms == ["bruising"]


def test_unknown_severity_does_not_overwrite():
    merged = merge_details(InjuryDetails(severity="severe"), InjuryDetails(severity="unknown"))
    assert merged.severity == Severity.SEVERE


def test_add_symptoms_dedupes():
    details = add_symptoms(InjuryDetails(symptoms=["Swelling"]), ["Swelling", "Bruising"])
    assert details.symptoms == ["Swelling", "Bruising"]


@pytest.mark.parametrize("symptom, body_part", [
    ("pain", None),
    ("Ache", None),
    ("it hurts", None),
    ("knee pain", "knee"),
    ("Lower back ache", "lower back"),
])
def test_generic_pain_detected(symptom, body_part):
    assert is_generic_pain(symptom, body_part)


@pytest.mark.parametrize("symptom", ["sharp pain", "swelling", "pain when climbing stairs"])
def test_specific_symptoms_are_not_generic(symptom):
    assert not is_generic_pain(symptom, "knee")


def test_missing_fields_complete_details():
    details = InjuryDetails(body_part="knee", symptoms=["sharp pain", "swelling"],
                            duration="2 days", mechanism="twisted while running")
    assert missing_fields(details) == []


def test_missing_fields_single_generic_pain_counts_as_missing():
    details = InjuryDetails(body_part="knee", symptoms=["knee pain"], duration="unknown")
    missing = missing_fields(details)

    assert "body_part" not in missing
    assert missing == ["symptoms", "duration", "context_or_mechanism"]


def test_missing_fields_context_or_mechanism_either_satisfies():
    base = dict(body_part="wrist", symptoms=["swelling"], duration="1 week")
    assert "context_or_mechanism" not in missing_fields(InjuryDetails(context="at the gym", **base))
    assert "context_or_mechanism" not in missing_fields(InjuryDetails(mechanism="fell on it", **base))


def test_policy_stops_asking_at_ceiling():
    policy = ClarificationPolicy(max_rounds=2)
    vague = InjuryDetails(body_part="knee", symptoms=["pain"])

    assert policy.missing(vague, 0)
    assert policy.missing(vague, 1)
    assert policy.missing(vague, 2) == []
    assert not policy.should_ask_again(5)


def test_policy_next_count_is_bounded():
    policy = ClarificationPolicy(max_rounds=2)
    assert policy.next_count(0) == 1
    assert policy.next_count(1) == 2
    assert policy.next_count(2) == 2


def test_policy_rejects_rounds_above_ceiling():
    with pytest.raises(ValueError):
        ClarificationPolicy(max_rounds=3)


def test_zero_rounds_never_asks():
    policy = ClarificationPolicy(max_rounds=0)
    assert policy.missing(InjuryDetails(), 0) == []


def test_checklist_mentions_body_part():
    checklist = symptom_checklist(InjuryDetails(body_part="ankle"))
    assert "ankle" in checklist.message
    assert {c.category for c in checklist.categories} >= {"Pain character", "Sensation"}


def test_describe_missing_keeps_order():
    text = describe_missing(["duration", "body_part"])
    assert text.index("how long") < text.index("where exactly")
