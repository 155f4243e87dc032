"""
healthbay/parsing.py — extraction of structured model output
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

The generator answers in prose that may or may not embed one JSON object.
Every schema gets a parse-or-fallback function: a turn never fails because
the model wrote something we cannot read, and nothing unvalidated leaks
downstream.
"""

import json
import re
import logging
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from healthbay.errors import StructuredOutputParseError
from healthbay.models import (
    CONFIDENCE_ORDER,
    Classification,
    Confidence,
    Diagnosis,
    DiagnosisDetail,
    DiagnosisList,
    DetailTreatmentPlan,
    PhasedTreatmentPlan,
    ResultAnalysis,
    Test,
    TestPlan,
)

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


# ══════════════════════════════════════════════════════════════════════════════
#  EXTRACTION
# ══════════════════════════════════════════════════════════════════════════════

def extract_json_block(text: str, schema: str = "structured block") -> Tuple[Dict, str]:
    """
    Return (first well-formed JSON object, remaining prose).

    Fenced blocks are tried first, then every "{" in order. Raises
    StructuredOutputParseError when nothing decodes to an object.
    """
    if not text or not text.strip():
        raise StructuredOutputParseError(schema, "empty output", text or "")

    decoder = json.JSONDecoder()

    for match in _FENCE_RE.finditer(text):
        body = match.group(1).strip()
        try:
            obj = json.loads(body)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            prose = (text[:match.start()] + text[match.end():]).strip()
            return obj, prose

    pos = text.find("{")
    while pos != -1:
        try:
            obj, end = decoder.raw_decode(text[pos:])
        except json.JSONDecodeError:
            pos = text.find("{", pos + 1)
            continue
        if isinstance(obj, dict):
            prose = (text[:pos] + text[pos + end:]).strip()
            return obj, prose
        pos = text.find("{", pos + 1)

    raise StructuredOutputParseError(schema, "no JSON object found", text)


def _log_fallback(err: StructuredOutputParseError):
    raw = (err.raw or "").replace("\n", " ")
    logger.warning(f"Structured output fallback [{err.schema}]: {err.reason} | raw={raw[:200]!r}")


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")


def _str_list(value) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def strip_structured(text: str) -> str:
    """Prose with any embedded JSON object removed."""
    try:
        _, prose = extract_json_block(text)
        return prose
    except StructuredOutputParseError:
        return (text or "").strip()


# ══════════════════════════════════════════════════════════════════════════════
#  DIAGNOSIS LIST
# ══════════════════════════════════════════════════════════════════════════════

FALLBACK_ADVICE = [
    "Rest the injured area and avoid movements that make the pain worse.",
    "Apply ice wrapped in a cloth for 15-20 minutes every few hours during the first 48 hours.",
    "Seek medical care if you cannot bear weight, notice deformity, numbness, or the pain is severe.",
]
FALLBACK_FOLLOW_UP = "Could you tell me a bit more about how the injury happened and what makes it feel worse?"


def fallback_diagnosis_list() -> DiagnosisList:
    return DiagnosisList(
        diagnoses          = [],
        immediate_advice   = list(FALLBACK_ADVICE),
        follow_up_question = FALLBACK_FOLLOW_UP,
    )


def sort_by_confidence(diagnoses: List[Diagnosis]) -> List[Diagnosis]:
    return sorted(diagnoses, key=lambda d: CONFIDENCE_ORDER[d.confidence])


def parse_diagnosis_list(text: str) -> Tuple[DiagnosisList, bool]:
    """Returns (diagnosis list, parsed_ok)."""
    try:
        data, _ = extract_json_block(text, "diagnosis_list")
        raw_items = data.get("diagnoses")
        if not isinstance(raw_items, list):
            raise StructuredOutputParseError("diagnosis_list", "missing 'diagnoses' array", text)

        diagnoses: List[Diagnosis] = []
        seen = set()
        for i, item in enumerate(raw_items):
            if not isinstance(item, dict):
                continue
            name = str(item.get("name") or "").strip()
            if not name:
                continue
            item = dict(item)
            item["name"] = name
            item["id"] = str(item.get("id") or _slug(name) or f"diagnosis_{i + 1}")
            item["matchedSymptoms"] = _str_list(item.get("matchedSymptoms", item.get("matched_symptoms")))
            item["typicalCauses"] = _str_list(item.get("typicalCauses", item.get("typical_causes")))
            item.pop("matched_symptoms", None)
            item.pop("typical_causes", None)
            try:
                diagnosis = Diagnosis.model_validate(item)
            except ValidationError as e:
                logger.warning(f"Dropping invalid diagnosis entry '{name}': {e.error_count()} error(s)")
                continue
            if diagnosis.id in seen:
                continue
            seen.add(diagnosis.id)
            diagnoses.append(diagnosis)

        if raw_items and not diagnoses:
            raise StructuredOutputParseError("diagnosis_list", "no valid diagnosis entries", text)

        advice = _str_list(data.get("immediateAdvice", data.get("immediate_advice")))
        follow_up = str(data.get("followUpQuestion") or data.get("follow_up_question") or "").strip()
        return DiagnosisList(
            diagnoses          = sort_by_confidence(diagnoses),
            immediate_advice   = advice or list(FALLBACK_ADVICE),
            follow_up_question = follow_up or FALLBACK_FOLLOW_UP,
        ), True
    except StructuredOutputParseError as e:
        _log_fallback(e)
        return fallback_diagnosis_list(), False


# ══════════════════════════════════════════════════════════════════════════════
#  DIAGNOSIS DETAIL
# ══════════════════════════════════════════════════════════════════════════════

def fallback_diagnosis_detail(diagnosis: Optional[Diagnosis], name: str = "") -> DiagnosisDetail:
    if diagnosis is None:
        return DiagnosisDetail(
            diagnosis_name = name or "Possible injury",
            overview       = "Detailed information is not available right now.",
            red_flags      = ["Severe pain, numbness, deformity or inability to bear weight: seek care promptly."],
        )
    return DiagnosisDetail(
        diagnosis_name    = diagnosis.name,
        overview          = diagnosis.short_description,
        detailed_symptoms = list(diagnosis.matched_symptoms),
        causes            = list(diagnosis.typical_causes),
        treatment_plan    = DetailTreatmentPlan(immediate=list(FALLBACK_ADVICE[:2])),
        red_flags         = ["Severe pain, numbness, deformity or inability to bear weight: seek care promptly."],
    )


def parse_diagnosis_detail(text: str, diagnosis: Optional[Diagnosis],
                           name: str = "") -> Tuple[DiagnosisDetail, bool]:
    try:
        data, _ = extract_json_block(text, "diagnosis_detail")
        data = dict(data)
        data.setdefault("diagnosisName", diagnosis.name if diagnosis else name)
        if not str(data.get("diagnosisName") or "").strip():
            raise StructuredOutputParseError("diagnosis_detail", "missing diagnosisName", text)
        tests = data.get("diagnosticTests")
        if isinstance(tests, list):
            data["diagnosticTests"] = [
                t if isinstance(t, dict) else {"name": str(t)} for t in tests if t
            ]
        try:
            return DiagnosisDetail.model_validate(data), True
        except ValidationError as e:
            raise StructuredOutputParseError(
                "diagnosis_detail", f"{e.error_count()} validation error(s)", text
            ) from e
    except StructuredOutputParseError as e:
        _log_fallback(e)
        return fallback_diagnosis_detail(diagnosis, name), False


# ══════════════════════════════════════════════════════════════════════════════
#  TEST PLAN
# ══════════════════════════════════════════════════════════════════════════════

def fallback_test_plan(detail: Optional[DiagnosisDetail]) -> TestPlan:
    """One step per diagnostic test listed on the diagnosis detail."""
    tests = []
    for i, preview in enumerate(detail.diagnostic_tests if detail else []):
        tests.append(Test(
            id               = f"test_{i + 1}",
            name             = preview.name,
            purpose          = preview.description,
            steps            = [preview.description or f"Perform the {preview.name} slowly and carefully."],
            what_to_look_for = "Whether the movement reproduces your usual pain or symptoms.",
            safety_note      = "Stop immediately if you feel sharp or severe pain.",
        ))
    return TestPlan(tests=tests)


def parse_test_plan(text: str, detail: Optional[DiagnosisDetail]) -> Tuple[TestPlan, bool]:
    try:
        data, _ = extract_json_block(text, "test_plan")
        raw_tests = data.get("tests")
        if not isinstance(raw_tests, list):
            raise StructuredOutputParseError("test_plan", "missing 'tests' array", text)

        tests: List[Test] = []
        for i, item in enumerate(raw_tests):
            if not isinstance(item, dict) or not str(item.get("name") or "").strip():
                continue
            item = dict(item)
            item["id"] = str(item.get("id") or f"test_{i + 1}")
            try:
                test = Test.model_validate(item)
            except ValidationError:
                continue
            if test.steps:
                tests.append(test)

        if not tests:
            raise StructuredOutputParseError("test_plan", "no usable tests", text)

        return TestPlan(
            introduction   = str(data.get("introduction") or "").strip(),
            safety_warning = str(data.get("safetyWarning") or data.get("safety_warning") or "").strip(),
            tests          = tests,
        ), True
    except StructuredOutputParseError as e:
        _log_fallback(e)
        return fallback_test_plan(detail), False


# ══════════════════════════════════════════════════════════════════════════════
#  RESULT ANALYSIS
# ══════════════════════════════════════════════════════════════════════════════

def fallback_analysis(diagnosis_name: str) -> ResultAnalysis:
    return ResultAnalysis(
        refined_diagnosis = diagnosis_name or "Undetermined soft-tissue injury",
        confidence        = Confidence.MEDIUM,
        summary           = (
            "Your test results could not be analysed in detail. Treat this as a moderate "
            "injury and follow conservative care while monitoring your symptoms."
        ),
        treatment_plan    = PhasedTreatmentPlan(
            immediate                  = ["Rest, ice, compression and elevation for the first 48 hours."],
            week_1                     = ["Gentle pain-free range-of-motion exercises."],
            weeks_2_to_3               = ["Gradually reintroduce strengthening as pain allows."],
            ongoing                    = ["Return to full activity only when pain-free."],
            requires_professional_care = ["See a doctor or physiotherapist if there is no improvement within 1-2 weeks."],
        ),
        red_flags          = [
            "Inability to bear weight or use the limb",
            "Numbness, tingling or loss of colour",
            "Rapidly increasing swelling or visible deformity",
        ],
        estimated_recovery = "2-6 weeks",
    )


def parse_analysis(text: str, diagnosis_name: str) -> Tuple[ResultAnalysis, bool]:
    try:
        data, _ = extract_json_block(text, "analysis")
        data = dict(data)
        if not str(data.get("refinedDiagnosis") or data.get("refined_diagnosis") or "").strip():
            raise StructuredOutputParseError("analysis", "missing refinedDiagnosis", text)
        if not isinstance(data.get("treatmentPlan", data.get("treatment_plan")), dict):
            raise StructuredOutputParseError("analysis", "missing treatmentPlan", text)
        try:
            return ResultAnalysis.model_validate(data), True
        except ValidationError as e:
            raise StructuredOutputParseError(
                "analysis", f"{e.error_count()} validation error(s)", text
            ) from e
    except StructuredOutputParseError as e:
        _log_fallback(e)
        return fallback_analysis(diagnosis_name), False


# ══════════════════════════════════════════════════════════════════════════════
#  CLASSIFICATION
# ══════════════════════════════════════════════════════════════════════════════

def parse_classification(text: str) -> Optional[Classification]:
    """None when the classifier output is unusable; callers pick the fallback."""
    try:
        data, _ = extract_json_block(text, "classification")
        try:
            return Classification.model_validate(data)
        except ValidationError as e:
            raise StructuredOutputParseError(
                "classification", f"{e.error_count()} validation error(s)", text
            ) from e
    except StructuredOutputParseError as e:
        _log_fallback(e)
        return None
