"""
healthbay/context.py — context serializer
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

The conversation lives entirely in the context the client echoes back, so
this module is the only gate between untrusted client JSON and the router:

  load_context()  raw dict → validated ConversationContext (salvages what it can)
  dump_context()  ConversationContext → versioned, stage-projected dict
  summary_projection() / context_from_summary()  minimal record for chat history

Stage projection: some fields only mean something in some stages. They are
dropped everywhere else, so a context can never be "in TREATMENT_CHAT with a
half-finished test session".
"""

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from healthbay.config import CLARIFICATION_CEILING
from healthbay.details import missing_fields
from healthbay.models import (
    CONTEXT_SCHEMA_VERSION,
    TEST_STAGES,
    ConversationContext,
    DiagnosisDetail,
    Stage,
)

logger = logging.getLogger(__name__)

# field → stages where it may be present
STAGE_SCOPED_FIELDS = {
    "test_session": TEST_STAGES,
    "missing_info": frozenset({Stage.GATHERING_INFO}),
}

_EMPTY = {
    "test_session": None,
    "missing_info": [],
}


# ─────────────────────────────────────────────
# Normalisation
# ─────────────────────────────────────────────

def project(ctx: ConversationContext) -> ConversationContext:
    """Drop stage-inconsistent fields and recompute derived ones."""
    update: Dict[str, Any] = {}

    for field, stages in STAGE_SCOPED_FIELDS.items():
        if ctx.stage not in stages and getattr(ctx, field):
            update[field] = _EMPTY[field]

    count = max(0, min(ctx.interaction_count, CLARIFICATION_CEILING))
    if count != ctx.interaction_count:
        update["interaction_count"] = count

    # Never trusted from the client: always derived from the merged details.
    if ctx.stage == Stage.GATHERING_INFO:
        update["missing_info"] = missing_fields(ctx.current_details)

    if not ctx.diagnosis_id and (ctx.diagnosis_name or ctx.diagnosis_detail):
        update["diagnosis_name"] = None
        update["diagnosis_detail"] = None

    if ctx.schema_version != CONTEXT_SCHEMA_VERSION:
        update["schema_version"] = CONTEXT_SCHEMA_VERSION

    return ctx.model_copy(update=update) if update else ctx


# ─────────────────────────────────────────────
# Load / dump
# ─────────────────────────────────────────────

def _salvage(raw: Dict[str, Any]) -> ConversationContext:
    """Keep every top-level field that validates on its own."""
    kept = {}
    for key, value in raw.items():
        try:
            ConversationContext.model_validate({key: value})
        except ValidationError:
            logger.warning(f"Dropping invalid context field '{key}'")
            continue
        kept[key] = value
    return ConversationContext.model_validate(kept)


def load_context(raw: Optional[Dict[str, Any]]) -> ConversationContext:
    if not raw or not isinstance(raw, dict):
        return ConversationContext()

    version = raw.get("schemaVersion", raw.get("schema_version", CONTEXT_SCHEMA_VERSION))
    if not isinstance(version, int) or version > CONTEXT_SCHEMA_VERSION:
        logger.warning(f"Context schema version {version!r} not understood; reading as v{CONTEXT_SCHEMA_VERSION}")
    raw = {k: v for k, v in raw.items() if k not in ("schemaVersion", "schema_version")}

    try:
        ctx = ConversationContext.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Context failed validation ({e.error_count()} error(s)); salvaging valid fields")
        ctx = _salvage(raw)
    return project(ctx)


def dump_context(ctx: ConversationContext) -> Dict[str, Any]:
    return project(ctx).model_dump(by_alias=True, mode="json", exclude_none=True)


# ─────────────────────────────────────────────
# History projection
# ─────────────────────────────────────────────

def summary_projection(ctx: ConversationContext) -> Dict[str, Any]:
    """Smallest record from which a conversation can be resumed from history."""
    ctx = project(ctx)
    record: Dict[str, Any] = {
        "schemaVersion":  CONTEXT_SCHEMA_VERSION,
        "stage":          ctx.stage.value if ctx.stage else None,
        "currentDetails": ctx.current_details.model_dump(mode="json", exclude_none=True),
        "diagnosisId":    ctx.diagnosis_id,
        "diagnosisName":  ctx.diagnosis_name,
    }
    if ctx.diagnosis_detail:
        d = ctx.diagnosis_detail
        record["diagnosisDetail"] = {
            "diagnosisName":         d.diagnosis_name,
            "overview":              d.overview,
            "estimatedRecoveryTime": d.estimated_recovery_time,
        }
    if ctx.test_session:
        s = ctx.test_session
        record["testSession"] = {
            "phase":            s.phase.value,
            "currentTestIndex": s.current_test_index,
            "totalTests":       len(s.test_plan),
            "stopped":          s.stopped,
            "testResults":      [r.model_dump(by_alias=True, mode="json") for r in s.test_results],
        }
    if ctx.analysis:
        record["analysis"] = ctx.analysis.model_dump(by_alias=True, mode="json")
    if ctx.refined_treatment_plan:
        record["refinedTreatmentPlan"] = ctx.refined_treatment_plan.model_dump(by_alias=True, mode="json")
    if ctx.test_results:
        record["testResults"] = [r.model_dump(by_alias=True, mode="json") for r in ctx.test_results]
    record["confirmedDiagnosis"] = ctx.confirmed_diagnosis
    return record


def context_from_summary(record: Dict[str, Any]) -> ConversationContext:
    """
    Rebuild a context from summary_projection(). The test plan is not kept in
    history, so a conversation saved mid-test resumes at the diagnosis detail
    with the results recorded so far.
    """
    if not record:
        return ConversationContext()
    raw = dict(record)
    session = raw.pop("testSession", None)
    detail = raw.pop("diagnosisDetail", None)
    ctx = load_context(raw)

    update: Dict[str, Any] = {}
    if detail:
        try:
            update["diagnosis_detail"] = DiagnosisDetail.model_validate(detail)
        except ValidationError:
            logger.warning("Stored diagnosis detail unreadable; resuming without it")
    if ctx.stage in TEST_STAGES:
        update["stage"] = Stage.DIAGNOSIS_DETAIL if ctx.diagnosis_id else Stage.CONVERSATIONAL
        if session and not ctx.test_results:
            partial = load_context({"testResults": session.get("testResults") or []})
            update["test_results"] = partial.test_results
    return project(ctx.model_copy(update=update)) if update else ctx
