"""
Shared fakes for the router, API and collaborator tests.

The collaborators are duck-typed, so plain classes with the same methods
stand in for Groq and FAISS.
"""

import json

import pytest

from healthbay.models import (
    Classification,
    InjuryDetails,
    RetrievalResult,
    Source,
    TestPlan,
    Test,
)
from healthbay.router import StageRouter


class ScriptedGenerator:
    """Returns the scripted texts in order; an Exception item is raised instead."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        if not self.responses:
            raise RuntimeError("no scripted generation left")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeRetriever:
    def __init__(self, result=None, raises=None):
        self.result = result or RetrievalResult(
            context="", sources=[], coverage_score=0.1, rag_used=False,
            provenance="AI-generated summary (no direct source match).",
        )
        self.raises = raises
        self.calls = []

    def retrieve(self, query, body_part_id=None, injury_id=None):
        self.calls.append({"query": query, "body_part_id": body_part_id, "injury_id": injury_id})
        if self.raises:
            raise self.raises
        return self.result


class FakeClassifier:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def classify(self, message, known, history):
        self.calls.append(message)
        if not self.results:
            return None
        return self.results.pop(0)


def injury(**details):
    return Classification(category="injury", details=InjuryDetails(**details))


def grounded_result():
    return RetrievalResult(
        context="# Source 1: Knee sprains\nMCL sprains follow twisting injuries...",
        sources=[Source(number=1, title="Knee sprains", url="https://example.org/knee")],
        coverage_score=0.8,
        rag_used=True,
        provenance="Based on verified clinical sources from HealthBay's database.",
    )


DIAGNOSIS_LIST_TEXT = (
    "Here are the injuries that best match what you describe. This is not a medical diagnosis.\n"
    + json.dumps({
        "diagnoses": [
            {"id": "meniscus_tear", "name": "Meniscus Tear", "confidence": "medium",
             "shortDescription": "Tear of the knee cartilage.", "matchedSymptoms": ["swelling"],
             "typicalCauses": ["twisting"]},
            {"id": "mcl_sprain", "name": "MCL Sprain", "confidence": "high",
             "shortDescription": "Sprain of the inner knee ligament.", "matchedSymptoms": ["sharp pain"],
             "typicalCauses": ["twisting"]},
        ],
        "immediateAdvice": ["Rest and ice the knee."],
        "followUpQuestion": "Does the knee lock or catch?",
    })
)

DIAGNOSIS_DETAIL_TEXT = json.dumps({
    "diagnosisName": "MCL Sprain",
    "overview": "The MCL stabilises the inner knee.",
    "detailedSymptoms": ["inner knee pain"],
    "causes": ["valgus twist"],
    "recoveryTimeline": "2-6 weeks",
    "treatmentPlan": {"immediate": ["RICE"], "ongoing": ["bracing"], "rehabilitation": ["quad sets"]},
    "diagnosticTests": [{"name": "Valgus stress", "description": "Gentle sideways pressure"}],
    "redFlags": ["knee gives way"],
    "whenToSeeDoctorImmediate": ["cannot bear weight"],
    "whenToSeeDoctor24_48hrs": ["swelling increasing"],
    "estimatedRecoveryTime": "2-6 weeks",
    "returnToActivityGuidelines": ["full pain-free range"],
})


def plan_json(step_counts=(2, 1, 3)):
    return json.dumps({
        "introduction": "We will run a few gentle tests.",
        "safetyWarning": "Stop if anything hurts sharply.",
        "tests": [
            {"id": f"t{i + 1}", "name": f"Test {i + 1}", "purpose": "check",
             "steps": [f"step {j + 1}" for j in range(n)], "estimatedTime": "1 minute",
             "whatToLookFor": "pain", "safetyNote": "stop on sharp pain"}
            for i, n in enumerate(step_counts)
        ],
    })


ANALYSIS_TEXT = json.dumps({
    "refinedDiagnosis": "Grade 1 MCL Sprain",
    "confidence": "high",
    "summary": "Your results point to a mild MCL sprain.",
    "treatmentPlan": {"immediate": ["ice"], "week1": ["gentle range of motion"],
                      "weeks2To3": ["strengthening"], "ongoing": ["return to sport"],
                      "requiresProfessionalCare": ["if instability persists"]},
    "redFlags": ["locking"],
    "estimatedRecovery": "2-3 weeks",
})


def make_plan(step_counts=(2, 1, 3)) -> TestPlan:
    return TestPlan(tests=[
        Test(id=f"t{i + 1}", name=f"Test {i + 1}", steps=[f"step {j + 1}" for j in range(n)])
        for i, n in enumerate(step_counts)
    ])


@pytest.fixture
def make_router():
    def _make(generator=None, retriever=None, classifier=None, **kwargs):
        return StageRouter(
            retriever or FakeRetriever(),
            generator or ScriptedGenerator(),
            classifier or FakeClassifier(),
            **kwargs,
        )
    return _make
