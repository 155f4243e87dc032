"""
healthbay/models.py — conversation, injury and test-session models
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

Everything that crosses the wire is camelCase (the mobile client speaks
camelCase); InjuryDetails keeps its snake_case keys because that is how the
classifier and the stored chat records have always spelled them.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# ══════════════════════════════════════════════════════════════════════════════
#  ENUMS & VOCABULARY
# ══════════════════════════════════════════════════════════════════════════════

class Stage(str, Enum):
    GATHERING_INFO             = "GATHERING_INFO"
    DIAGNOSIS_LIST             = "DIAGNOSIS_LIST"
    DIAGNOSIS_DETAIL           = "DIAGNOSIS_DETAIL"
    DIAGNOSTIC_TEST_INTRO      = "DIAGNOSTIC_TEST_INTRO"
    DIAGNOSTIC_TEST_STEP       = "DIAGNOSTIC_TEST_STEP"
    DIAGNOSTIC_TEST_RESULT     = "DIAGNOSTIC_TEST_RESULT"
    DIAGNOSTIC_TEST_TRANSITION = "DIAGNOSTIC_TEST_TRANSITION"
    DIAGNOSTIC_TEST_STOPPED    = "DIAGNOSTIC_TEST_STOPPED"
    DIAGNOSTIC_TEST_COMPLETE   = "DIAGNOSTIC_TEST_COMPLETE"
    TREATMENT_CHAT             = "TREATMENT_CHAT"
    CONFIRMED_INJURY_CHAT      = "CONFIRMED_INJURY_CHAT"
    CONVERSATIONAL             = "CONVERSATIONAL"
    GENERAL                    = "GENERAL"
    ERROR                      = "ERROR"


TEST_STAGES = frozenset({
    Stage.DIAGNOSTIC_TEST_INTRO,
    Stage.DIAGNOSTIC_TEST_STEP,
    Stage.DIAGNOSTIC_TEST_RESULT,
    Stage.DIAGNOSTIC_TEST_TRANSITION,
    Stage.DIAGNOSTIC_TEST_STOPPED,
    Stage.DIAGNOSTIC_TEST_COMPLETE,
})


class Severity(str, Enum):
    MILD     = "mild"
    MODERATE = "moderate"
    SEVERE   = "severe"
    UNKNOWN  = "unknown"


class Confidence(str, Enum):
    HIGH   = "high"
    MEDIUM = "medium"
    LOW    = "low"


CONFIDENCE_ORDER = {Confidence.HIGH: 0, Confidence.MEDIUM: 1, Confidence.LOW: 2}


class TestOutcome(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    UNSURE   = "unsure"
    STOPPED  = "stopped"


class TestPhase(str, Enum):
    INTRO      = "INTRO"
    STEP       = "STEP"
    RESULT     = "RESULT"
    TRANSITION = "TRANSITION"
    STOPPED    = "STOPPED"
    COMPLETE   = "COMPLETE"


# Values the classifier emits when it has nothing real to say.
SENTINELS = frozenset({
    "", "unknown", "not specified", "unspecified", "none", "null", "n/a", "na",
    "not provided", "not mentioned", "not sure", "?",
})


def is_sentinel(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, Enum):
        value = value.value
    return str(value).strip().lower() in SENTINELS


def coerce_confidence(value: Any, default: "Confidence") -> "Confidence":
    text = str(getattr(value, "value", value) or "").strip().lower()
    if text in ("moderate", "med"):
        text = "medium"
    try:
        return Confidence(text)
    except ValueError:
        return default


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ══════════════════════════════════════════════════════════════════════════════
#  INJURY DETAILS
# ══════════════════════════════════════════════════════════════════════════════

class InjuryDetails(BaseModel):
    body_part:       Optional[str] = None
    symptoms:        List[str]     = Field(default_factory=list)
    severity:        Severity      = Severity.UNKNOWN
    duration:        Optional[str] = None
    context:         Optional[str] = None
    mechanism:       Optional[str] = None
    medical_history: Optional[str] = None
    injury_name:     Optional[str] = None

    @field_validator("symptoms", mode="before")
    @classmethod
    def _clean_symptoms(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple, set)):
            return []
        cleaned = [s.strip() for s in value if isinstance(s, str) and s.strip()]
        return list(dict.fromkeys(cleaned))

    @field_validator("severity", mode="before")
    @classmethod
    def _coerce_severity(cls, value):
        if isinstance(value, Severity):
            return value
        text = str(value or "").strip().lower()
        try:
            return Severity(text)
        except ValueError:
            return Severity.UNKNOWN

    @field_validator("body_part", "duration", "context", "mechanism",
                     "medical_history", "injury_name", mode="before")
    @classmethod
    def _coerce_text(cls, value):
        if value is None:
            return None
        if not isinstance(value, str):
            value = str(value)
        value = value.strip()
        return value or None

    def is_empty(self) -> bool:
        scalars = (self.body_part, self.duration, self.context, self.mechanism,
                   self.medical_history, self.injury_name)
        return (
            not self.symptoms
            and self.severity == Severity.UNKNOWN
            and all(is_sentinel(v) for v in scalars)
        )


# ══════════════════════════════════════════════════════════════════════════════
#  DIAGNOSES
# ══════════════════════════════════════════════════════════════════════════════

class Diagnosis(CamelModel):
    id:                str
    name:              str
    confidence:        Confidence = Confidence.LOW
    short_description: str        = ""
    matched_symptoms:  List[str]  = Field(default_factory=list)
    typical_causes:    List[str]  = Field(default_factory=list)

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value):
        return coerce_confidence(value, Confidence.LOW)


class DiagnosisList(CamelModel):
    diagnoses:          List[Diagnosis] = Field(default_factory=list)
    immediate_advice:   List[str]       = Field(default_factory=list)
    follow_up_question: str             = ""


class DetailTreatmentPlan(CamelModel):
    immediate:      List[str] = Field(default_factory=list)
    ongoing:        List[str] = Field(default_factory=list)
    rehabilitation: List[str] = Field(default_factory=list)


class DiagnosticTestPreview(CamelModel):
    name:        str
    description: str = ""


class DiagnosisDetail(CamelModel):
    diagnosis_name:                str
    overview:                      str                         = ""
    detailed_symptoms:             List[str]                   = Field(default_factory=list)
    causes:                        List[str]                   = Field(default_factory=list)
    recovery_timeline:             str                         = ""
    treatment_plan:                DetailTreatmentPlan         = Field(default_factory=DetailTreatmentPlan)
    diagnostic_tests:              List[DiagnosticTestPreview] = Field(default_factory=list)
    red_flags:                     List[str]                   = Field(default_factory=list)
    when_to_see_doctor_immediate:  List[str]                   = Field(default_factory=list)
    when_to_see_doctor_24_48hrs:   List[str]                   = Field(default_factory=list, alias="whenToSeeDoctor24_48hrs")
    estimated_recovery_time:       str                         = ""
    return_to_activity_guidelines: List[str]                   = Field(default_factory=list)


# ══════════════════════════════════════════════════════════════════════════════
#  DIAGNOSTIC TEST SESSION
# ══════════════════════════════════════════════════════════════════════════════

class Test(CamelModel):
    __test__ = False  # not a pytest class

    id:               str
    name:             str
    purpose:          str       = ""
    steps:            List[str] = Field(default_factory=list)
    estimated_time:   str       = ""
    what_to_look_for: str       = ""
    safety_note:      str       = ""

    @field_validator("steps", mode="before")
    @classmethod
    def _clean_steps(cls, value):
        if not isinstance(value, list):
            return []
        return [s.strip() for s in value if isinstance(s, str) and s.strip()]


class TestResult(CamelModel):
    __test__ = False

    test_id:    str
    test_name:  str
    result:     TestOutcome
    pain_level: Optional[int] = Field(default=None, ge=0, le=10)
    timestamp:  str           = Field(default_factory=_utc_now)


class TestSession(CamelModel):
    __test__ = False

    test_plan:          List[Test]       = Field(default_factory=list)
    current_test_index: int              = 0
    current_step_index: int              = 0
    test_results:       List[TestResult] = Field(default_factory=list)
    stopped:            bool             = False
    stop_reason:        Optional[str]    = None
    phase:              TestPhase        = TestPhase.INTRO
    introduction:       str              = ""
    safety_warning:     str              = ""

    @model_validator(mode="after")
    def _clamp_indices(self):
        total = len(self.test_plan)
        self.current_test_index = max(0, min(self.current_test_index, total))
        if self.current_test_index < total:
            steps = len(self.test_plan[self.current_test_index].steps)
            self.current_step_index = max(0, min(self.current_step_index, max(steps - 1, 0)))
        else:
            self.current_step_index = 0
        return self


class TestAction(CamelModel):
    __test__ = False

    action:     Literal["start_test", "next_step", "submit_result", "stop_test"]
    result:     Optional[TestOutcome] = None
    reason:     Optional[str]         = None
    pain_level: Optional[int]         = Field(default=None, ge=0, le=10)


class TestPlan(CamelModel):
    introduction:   str        = ""
    safety_warning: str        = ""
    tests:          List[Test] = Field(default_factory=list)


# ══════════════════════════════════════════════════════════════════════════════
#  RESULT ANALYSIS
# ══════════════════════════════════════════════════════════════════════════════

class PhasedTreatmentPlan(CamelModel):
    immediate:                  List[str] = Field(default_factory=list)
    week_1:                     List[str] = Field(default_factory=list, alias="week1")
    weeks_2_to_3:               List[str] = Field(default_factory=list, alias="weeks2To3")
    ongoing:                    List[str] = Field(default_factory=list)
    requires_professional_care: List[str] = Field(default_factory=list)


class ResultAnalysis(CamelModel):
    refined_diagnosis:  str                 = ""
    confidence:         Confidence          = Confidence.MEDIUM
    summary:            str                 = ""
    treatment_plan:     PhasedTreatmentPlan = Field(default_factory=PhasedTreatmentPlan)
    red_flags:          List[str]           = Field(default_factory=list)
    estimated_recovery: str                 = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value):
        return coerce_confidence(value, Confidence.MEDIUM)


# ══════════════════════════════════════════════════════════════════════════════
#  CONVERSATION CONTEXT
# ══════════════════════════════════════════════════════════════════════════════

CONTEXT_SCHEMA_VERSION = 1


class ConversationContext(CamelModel):
    schema_version:         int                           = CONTEXT_SCHEMA_VERSION
    stage:                  Optional[Stage]               = None
    current_details:        InjuryDetails                 = Field(default_factory=InjuryDetails)
    missing_info:           List[str]                     = Field(default_factory=list)
    interaction_count:      int                           = Field(default=0, ge=0)
    diagnoses:              List[Diagnosis]               = Field(default_factory=list)
    diagnosis_id:           Optional[str]                 = None
    diagnosis_name:         Optional[str]                 = None
    diagnosis_detail:       Optional[DiagnosisDetail]     = None
    test_session:           Optional[TestSession]         = None
    analysis:               Optional[ResultAnalysis]      = None
    refined_treatment_plan: Optional[PhasedTreatmentPlan] = None
    test_results:           List[TestResult]              = Field(default_factory=list)
    confirmed_diagnosis:    bool                          = False

    def has_details(self) -> bool:
        return not self.current_details.is_empty()


# ══════════════════════════════════════════════════════════════════════════════
#  COLLABORATOR PAYLOADS
# ══════════════════════════════════════════════════════════════════════════════

class Source(CamelModel):
    number: int
    title:  str           = "Document"
    url:    Optional[str] = None


class RetrievalResult(CamelModel):
    context:        str          = ""
    sources:        List[Source] = Field(default_factory=list)
    coverage_score: float        = 0.0
    rag_used:       bool         = False
    provenance:     str          = ""


class Classification(CamelModel):
    category: Literal["injury", "general_health", "other"] = "other"
    details:  InjuryDetails                                = Field(default_factory=InjuryDetails)

    @field_validator("category", mode="before")
    @classmethod
    def _coerce_category(cls, value):
        text = str(value or "").strip().lower().replace(" ", "_").replace("-", "_")
        return text if text in ("injury", "general_health", "other") else "other"

    @field_validator("details", mode="before")
    @classmethod
    def _coerce_details(cls, value):
        return value if isinstance(value, (dict, InjuryDetails)) else {}


class SymptomCategory(CamelModel):
    category: str
    symptoms: List[str] = Field(default_factory=list)


class SymptomChecklist(CamelModel):
    message:    str                   = ""
    categories: List[SymptomCategory] = Field(default_factory=list)


# ══════════════════════════════════════════════════════════════════════════════
#  TURN REQUEST / RESPONSE
# ══════════════════════════════════════════════════════════════════════════════

class ChatMessage(CamelModel):
    role: Literal["user", "assistant"]
    text: str = ""


class ActionFlags(CamelModel):
    diagnosis_id:          Optional[str]        = None
    start_diagnostic_test: bool                 = False
    test_response:         Optional[TestAction] = None
    start_treatment_chat:  bool                 = False
    confirm_injury:        bool                 = False
    exit_diagnostic_test:  bool                 = False
    selected_symptoms:     Optional[List[str]]  = None


class TurnRequest(CamelModel):
    message:         str                = ""
    chat_history:    List[ChatMessage]  = Field(default_factory=list)
    # Raw on purpose: the context serializer validates it.
    current_context: Optional[Dict[str, Any]] = None
    action_flags:    ActionFlags        = Field(default_factory=ActionFlags)
    chat_id:         Optional[str]      = None


class TurnResponse(CamelModel):
    stage:              Stage
    response:           Optional[str]              = None
    diagnoses:          Optional[List[Diagnosis]]  = None
    immediate_advice:   List[str]                  = Field(default_factory=list)
    follow_up_question: Optional[str]              = None
    diagnosis_detail:   Optional[DiagnosisDetail]  = None
    test_session:       Optional[Dict[str, Any]]   = None
    analysis:           Optional[ResultAnalysis]   = None
    symptom_checklist:  Optional[SymptomChecklist] = None
    missing_info:       List[str]                  = Field(default_factory=list)
    provenance:         Optional[str]              = None
    sources:            List[Source]               = Field(default_factory=list)
    current_context:    Dict[str, Any]             = Field(default_factory=dict)
    next_action:        str                        = ""
    ui_hint:            str                        = ""
    chat_id:            Optional[str]              = None
