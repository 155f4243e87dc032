"""
Tests for structured-output extraction and the per-schema fallbacks.
"""

import json

import pytest

from conftest import ANALYSIS_TEXT, DIAGNOSIS_DETAIL_TEXT, DIAGNOSIS_LIST_TEXT, plan_json
from healthbay.errors import StructuredOutputParseError
from healthbay.models import Confidence, Diagnosis, DiagnosisDetail, DiagnosticTestPreview
from healthbay.parsing import (
    FALLBACK_ADVICE,
    FALLBACK_FOLLOW_UP,
    extract_json_block,
    parse_analysis,
    parse_classification,
    parse_diagnosis_detail,
    parse_diagnosis_list,
    parse_test_plan,
    strip_structured,
)


def test_extract_from_fenced_block():
    text = 'Some intro.\n```json\n{"a": 1}\n```\nBye.'
    data, prose = extract_json_block(text)
    assert data == {"a": 1}
    assert "Some intro." in prose and "Bye." in prose
    assert "{" not in prose


def test_extract_skips_broken_braces():
    text = 'Use {curly} words, then {"ok": true}'
    data, _ = extract_json_block(text)
    assert data == {"ok": True}


@pytest.mark.parametrize("text", ["", "   ", "no json here", "[1, 2, 3]"])
def test_extract_raises_without_object(text):
    with pytest.raises(StructuredOutputParseError):
        extract_json_block(text, "test")


def test_strip_structured_returns_prose_only():
    assert strip_structured('Hello.\n{"x": 1}') == "Hello."
    assert strip_structured("just prose") == "just prose"


def test_diagnosis_list_sorted_by_confidence():
    result, ok = parse_diagnosis_list(DIAGNOSIS_LIST_TEXT)
    assert ok
    assert [d.id for d in result.diagnoses] == ["mcl_sprain", "meniscus_tear"]
    assert result.diagnoses[0].confidence == Confidence.HIGH
    assert result.follow_up_question == "Does the knee lock or catch?"


def test_diagnosis_list_fills_ids_and_coerces_confidence():
    text = json.dumps({"diagnoses": [
        {"name": "Ankle Sprain", "confidence": "Moderate"},
        {"name": "Ankle Sprain", "confidence": "low"},
        {"confidence": "high"},
    ]})
    result, ok = parse_diagnosis_list(text)
    assert ok
    assert len(result.diagnoses) == 1
    assert result.diagnoses[0].id == "ankle_sprain"
    assert result.diagnoses[0].confidence == Confidence.MEDIUM
    assert result.immediate_advice == FALLBACK_ADVICE


def test_diagnosis_list_fallback_on_garbage():
    result, ok = parse_diagnosis_list("I think it's probably a sprain.")
    assert not ok
    assert result.diagnoses == []
    assert result.immediate_advice == FALLBACK_ADVICE
    assert result.follow_up_question == FALLBACK_FOLLOW_UP


def test_diagnosis_detail_parses_alias_keys():
    detail, ok = parse_diagnosis_detail(DIAGNOSIS_DETAIL_TEXT, None, "MCL Sprain")
    assert ok
    assert detail.when_to_see_doctor_24_48hrs == ["swelling increasing"]
    assert detail.diagnostic_tests[0].name == "Valgus stress"


def test_diagnosis_detail_fallback_uses_summary():
    diagnosis = Diagnosis(id="mcl_sprain", name="MCL Sprain", short_description="Inner knee sprain.",
                          matched_symptoms=["swelling"])
    detail, ok = parse_diagnosis_detail("not json", diagnosis)
    assert not ok
    assert detail.diagnosis_name == "MCL Sprain"
    assert detail.overview == "Inner knee sprain."
    assert detail.detailed_symptoms == ["swelling"]


def test_test_plan_parses_and_drops_stepless_tests():
    raw = json.loads(plan_json((2, 1)))
    raw["tests"].append({"name": "No steps", "steps": []})
    plan, ok = parse_test_plan(json.dumps(raw), None)
    assert ok
    assert [t.id for t in plan.tests] == ["t1", "t2"]
    assert plan.safety_warning == "Stop if anything hurts sharply."


def test_test_plan_fallback_from_detail():
    detail = DiagnosisDetail(diagnosis_name="MCL Sprain", diagnostic_tests=[
        DiagnosticTestPreview(name="Valgus stress", description="Gentle sideways pressure"),
    ])
    plan, ok = parse_test_plan("oops", detail)
    assert not ok
    assert len(plan.tests) == 1
    assert plan.tests[0].steps == ["Gentle sideways pressure"]


def test_test_plan_fallback_without_detail_is_empty():
    plan, ok = parse_test_plan("oops", None)
    assert not ok
    assert plan.tests == []


def test_analysis_parses():
    analysis, ok = parse_analysis(ANALYSIS_TEXT, "MCL Sprain")
    assert ok
    assert analysis.refined_diagnosis == "Grade 1 MCL Sprain"
    assert analysis.treatment_plan.week_1 == ["gentle range of motion"]
    assert analysis.treatment_plan.weeks_2_to_3 == ["strengthening"]


def test_analysis_fallback_is_medium_confidence():
    analysis, ok = parse_analysis('{"summary": "no diagnosis"}', "MCL Sprain")
    assert not ok
    assert analysis.refined_diagnosis == "MCL Sprain"
    assert analysis.confidence == Confidence.MEDIUM
    assert analysis.treatment_plan.immediate


def test_classification_normalises_category():
    c = parse_classification('{"category": "General Health", "details": null}')
    assert c.category == "general_health"
    assert c.details.is_empty()


def test_classification_unknown_category_is_other():
    c = parse_classification('{"category": "weather", "details": {"body_part": "knee"}}')
    assert c.category == "other"
    assert c.details.body_part == "knee"


def test_classification_unusable_returns_none():
    assert parse_classification("sorry, I can't help") is None
