"""
healthbay/details.py — detail merging and the missing-information policy

Both are pure: no I/O, no mutation of their inputs.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from healthbay.config import CLARIFICATION_CEILING, MAX_CLARIFICATION_ROUNDS
from healthbay.models import (
    InjuryDetails,
    Severity,
    SymptomCategory,
    SymptomChecklist,
    is_sentinel,
)


SCALAR_FIELDS = ("body_part", "severity", "duration", "context", "mechanism",
                 "medical_history", "injury_name")

# Ordered: this is also the order the follow-up question asks in.
FIELD_BODY_PART            = "body_part"
FIELD_SYMPTOMS             = "symptoms"
FIELD_DURATION             = "duration"
FIELD_CONTEXT_OR_MECHANISM = "context_or_mechanism"
ALL_FIELDS = (FIELD_BODY_PART, FIELD_SYMPTOMS, FIELD_DURATION, FIELD_CONTEXT_OR_MECHANISM)

_PAIN_FAMILY = {
    "pain", "pains", "painful", "ache", "aches", "aching", "achy", "hurt", "hurts",
    "hurting", "it hurts", "sore", "soreness", "discomfort",
}


# ─────────────────────────────────────────────
# Merge
# ─────────────────────────────────────────────

def merge_details(existing: InjuryDetails, extracted: InjuryDetails) -> InjuryDetails:
    """
    Fold newly extracted details into what we already know.

    Scalars take the new value only when it is real (non-empty, not a
    sentinel such as "unknown"); symptoms are an order-preserving union with
    exact-string dedup. merge(merge(a, b), b) == merge(a, b).
    """
    merged = {}
    for name in SCALAR_FIELDS:
        new_val = getattr(extracted, name)
        old_val = getattr(existing, name)
        merged[name] = old_val if is_sentinel(new_val) else new_val

    merged["symptoms"] = list(dict.fromkeys([*existing.symptoms, *extracted.symptoms]))
    return InjuryDetails(**merged)


def add_symptoms(existing: InjuryDetails, symptoms: List[str]) -> InjuryDetails:
    return merge_details(existing, InjuryDetails(symptoms=symptoms))


# ─────────────────────────────────────────────
# Missing-information policy
# ─────────────────────────────────────────────

def _normalise(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^a-z ]", " ", text.lower())).strip()


def is_generic_pain(symptom: str, body_part: Optional[str] = None) -> bool:
    """True for "pain", "ache", "it hurts" ... and "<body part> pain"."""
    text = _normalise(symptom)
    if text in _PAIN_FAMILY:
        return True
    if body_part and not is_sentinel(body_part):
        prefix = _normalise(body_part) + " "
        if text.startswith(prefix) and text[len(prefix):] in _PAIN_FAMILY:
            return True
    return False


def missing_fields(details: InjuryDetails) -> List[str]:
    missing = []
    if is_sentinel(details.body_part):
        missing.append(FIELD_BODY_PART)

    symptoms = details.symptoms
    if not symptoms or (len(symptoms) == 1 and is_generic_pain(symptoms[0], details.body_part)):
        missing.append(FIELD_SYMPTOMS)

    if is_sentinel(details.duration):
        missing.append(FIELD_DURATION)

    if is_sentinel(details.context) and is_sentinel(details.mechanism):
        missing.append(FIELD_CONTEXT_OR_MECHANISM)
    return missing


@dataclass(frozen=True)
class ClarificationPolicy:
    """
    Bounded retry: at most `max_rounds` clarification rounds, never more
    than CLARIFICATION_CEILING, so information gathering always ends.
    """
    max_rounds: int = MAX_CLARIFICATION_ROUNDS

    def __post_init__(self):
        if not 0 <= self.max_rounds <= CLARIFICATION_CEILING:
            raise ValueError(
                f"max_rounds must be between 0 and {CLARIFICATION_CEILING}, got {self.max_rounds}"
            )

    def should_ask_again(self, interaction_count: int) -> bool:
        return interaction_count < self.max_rounds

    def missing(self, details: InjuryDetails, interaction_count: int) -> List[str]:
        if not self.should_ask_again(interaction_count):
            return []
        return missing_fields(details)

    def next_count(self, interaction_count: int) -> int:
        return min(interaction_count + 1, self.max_rounds)


# ─────────────────────────────────────────────
# Symptom checklist
# ─────────────────────────────────────────────

SYMPTOM_CATEGORIES = [
    SymptomCategory(category="Pain character", symptoms=[
        "Sharp pain", "Dull ache", "Throbbing pain", "Burning pain",
        "Pain only when moving", "Pain at rest",
    ]),
    SymptomCategory(category="Swelling & appearance", symptoms=[
        "Swelling", "Bruising", "Redness", "Warmth to the touch", "Visible deformity",
    ]),
    SymptomCategory(category="Movement & function", symptoms=[
        "Stiffness", "Limited range of motion", "Weakness", "Instability or giving way",
        "Clicking or popping", "Locking", "Unable to bear weight",
    ]),
    SymptomCategory(category="Sensation", symptoms=[
        "Numbness", "Tingling", "Pins and needles", "Radiating pain",
    ]),
]


def symptom_checklist(details: InjuryDetails) -> SymptomChecklist:
    where = details.body_part if not is_sentinel(details.body_part) else "the injured area"
    return SymptomChecklist(
        message=f"Which of these are you noticing in {where}? Select everything that applies.",
        categories=SYMPTOM_CATEGORIES,
    )


def describe_missing(missing: List[str]) -> str:
    labels = {
        FIELD_BODY_PART:            "where exactly it hurts",
        FIELD_SYMPTOMS:             "what the symptoms feel like beyond general pain",
        FIELD_DURATION:             "how long this has been going on",
        FIELD_CONTEXT_OR_MECHANISM: "how it happened or what you were doing at the time",
    }
    return "; ".join(labels[m] for m in missing if m in labels)


def details_to_text(details: InjuryDetails) -> str:
    severity = details.severity.value if details.severity != Severity.UNKNOWN else "Not specified"
    lines = [
        f"Body part       : {details.body_part or 'Not specified'}",
        f"Symptoms        : {', '.join(details.symptoms) if details.symptoms else 'Not specified'}",
        f"Severity        : {severity}",
        f"Duration        : {details.duration or 'Not specified'}",
        f"Context         : {details.context or 'Not specified'}",
        f"Mechanism       : {details.mechanism or 'Not specified'}",
        f"Medical history : {details.medical_history or 'None reported'}",
    ]
    if details.injury_name:
        lines.append(f"Suspected injury: {details.injury_name}")
    return "\n".join(lines)
