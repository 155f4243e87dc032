"""
healthbay/router.py — Stage Router (turn orchestrator)
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

One inbound turn → exactly one handler → (stage, payload, next context).

Dispatch order (first match wins). Explicit flags beat the stage the
context is in, and the stage beats re-classifying raw text, so ambiguous
input can never bounce a conversation between stages:

   1. confirmInjury           → confirm_injury
   2. startTreatmentChat      → start_treatment_chat
   3. exitDiagnosticTest      → exit_diagnostic_test
   4. selectedSymptoms        → submit_symptoms        (non-null, may be empty)
   5. testResponse            → test_response
   6. startDiagnosticTest     → start_diagnostic_test
   7. diagnosisId             → diagnosis_detail
   8. GATHERING_INFO + details        → intake_follow_up
   9. DIAGNOSIS_LIST + details        → intake_follow_up
  10. TREATMENT_CHAT + details        → treatment_follow_up
  11. CONFIRMED_INJURY_CHAT + details → confirmed_follow_up
  12. any other stage + details       → conversational_follow_up
  13. otherwise                       → classify (injury | general_health | other)

Per turn a handler issues at most one retrieval and one generation (plus one
classification where it needs fresh details), retrieval always before the
generation that reads it. Contexts are never mutated in place.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from healthbay.collaborators import format_history, hint_id, unavailable_result
from healthbay.context import dump_context, load_context, project
from healthbay.details import (
    FIELD_SYMPTOMS,
    ClarificationPolicy,
    add_symptoms,
    describe_missing,
    details_to_text,
    merge_details,
    missing_fields,
    symptom_checklist,
)
from healthbay.errors import GenerationFailed, MissingSessionState
from healthbay.models import (
    TEST_STAGES,
    ConversationContext,
    Diagnosis,
    RetrievalResult,
    Stage,
    TestPhase,
    TestResult,
    TurnRequest,
    TurnResponse,
)
from healthbay.parsing import (
    fallback_diagnosis_detail,
    parse_analysis,
    parse_diagnosis_detail,
    parse_diagnosis_list,
    parse_test_plan,
    strip_structured,
)
from healthbay.prompts import (
    CONFIRMED_INJURY_PROMPT,
    DIAGNOSIS_DETAIL_PROMPT,
    DIAGNOSIS_LIST_GROUNDED_PROMPT,
    DIAGNOSIS_LIST_UNGROUNDED_PROMPT,
    FOLLOW_UP_CHAT_PROMPT,
    GATHERING_PROMPT,
    GENERAL_HEALTH_PROMPT,
    GROUNDED_BLOCK,
    OFF_TOPIC_RESPONSE,
    RESULT_ANALYSIS_PROMPT,
    TEST_PLAN_PROMPT,
    TREATMENT_INTRO_PROMPT,
    UNGROUNDED_BLOCK,
)
from healthbay.session_machine import apply_action, current_test, session_view, stage_for, start_session

logger = logging.getLogger(__name__)

RESTART_TESTS_MESSAGE = (
    "I lost track of your diagnostic test session. Please restart the diagnostic tests "
    "from your diagnosis to continue."
)
FAILED_TURN_MESSAGE = (
    "Sorry, I ran into a problem handling that. Please try again in a moment."
)


# ══════════════════════════════════════════════════════════════════════════════
#  PER-TURN CALL BUDGET
# ══════════════════════════════════════════════════════════════════════════════

class TurnBudget:
    """Wraps the collaborators for one turn and enforces one call of each."""

    def __init__(self, retriever, generator, classifier):
        self.retriever  = retriever
        self.generator  = generator
        self.classifier = classifier
        self.calls: Dict[str, int] = {"retrieve": 0, "generate": 0, "classify": 0}

    def _spend(self, kind: str):
        if self.calls[kind]:
            raise RuntimeError(f"'{kind}' already called once this turn")
        self.calls[kind] += 1

    def retrieve(self, query: str, body_part_id: Optional[str] = None,
                 injury_id: Optional[str] = None) -> RetrievalResult:
        self._spend("retrieve")
        if self.retriever is None:
            return unavailable_result()
        try:
            return self.retriever.retrieve(query, body_part_id=body_part_id, injury_id=injury_id)
        except Exception as e:
            logger.warning(f"Retriever raised, treating as unavailable: {e}")
            return unavailable_result()

    def generate(self, prompt: str) -> str:
        self._spend("generate")
        try:
            return self.generator.generate(prompt)
        except GenerationFailed:
            raise
        except Exception as e:
            raise GenerationFailed(f"generation call failed: {e}") from e

    def classify(self, message: str, ctx: ConversationContext, turn: TurnRequest):
        self._spend("classify")
        try:
            return self.classifier.classify(message, ctx.current_details, turn.chat_history)
        except GenerationFailed:
            raise
        except Exception as e:
            raise GenerationFailed(f"classifier call failed: {e}") from e


@dataclass
class Reply:
    stage:   Stage
    context: ConversationContext
    payload: Dict[str, Any] = field(default_factory=dict)


# ══════════════════════════════════════════════════════════════════════════════
#  DISPATCH
# ══════════════════════════════════════════════════════════════════════════════

def select_handler(turn: TurnRequest, ctx: ConversationContext) -> str:
    flags = turn.action_flags
    if flags.confirm_injury:
        return "confirm_injury"
    if flags.start_treatment_chat:
        return "start_treatment_chat"
    if flags.exit_diagnostic_test:
        return "exit_diagnostic_test"
    if flags.selected_symptoms is not None:
        return "submit_symptoms"
    if flags.test_response is not None:
        return "test_response"
    if flags.start_diagnostic_test:
        return "start_diagnostic_test"
    if flags.diagnosis_id:
        return "diagnosis_detail"

    if ctx.stage is not None and ctx.has_details():
        if ctx.stage in (Stage.GATHERING_INFO, Stage.DIAGNOSIS_LIST):
            return "intake_follow_up"
        if ctx.stage == Stage.TREATMENT_CHAT:
            return "treatment_follow_up"
        if ctx.stage == Stage.CONFIRMED_INJURY_CHAT:
            return "confirmed_follow_up"
        return "conversational_follow_up"

    return "classify"


# ══════════════════════════════════════════════════════════════════════════════
#  ROUTER
# ══════════════════════════════════════════════════════════════════════════════

class StageRouter:
    """
    Stateless between turns: everything it knows arrives in the turn's
    context and leaves in the returned one.

    past_injuries, when given, maps (body part, chat id) to a short text about the
    user's earlier chats; it is folded into the diagnosis-list prompt.
    """

    def __init__(
        self,
        retriever,
        generator,
        classifier,
        policy:        Optional[ClarificationPolicy] = None,
        past_injuries: Optional[Callable[[Optional[str], Optional[str]], str]] = None,
    ):
        self.retriever     = retriever
        self.generator     = generator
        self.classifier    = classifier
        self.policy        = policy or ClarificationPolicy()
        self.past_injuries = past_injuries

    # ── Public API ────────────────────────────────────────────────────────────

    def handle_turn(self, turn: TurnRequest) -> TurnResponse:
        """Never raises: a failed turn returns ERROR with the caller's context untouched."""
        ctx = load_context(turn.current_context)
        try:
            _, response, _ = self.route(turn, ctx)
            return response
        except Exception as e:
            logger.error(f"Turn failed in stage {ctx.stage}: {e}", exc_info=True)
            return self._error_response(ctx, FAILED_TURN_MESSAGE, next_action="retry")

    def route(self, turn: TurnRequest,
              ctx: ConversationContext) -> Tuple[Stage, TurnResponse, ConversationContext]:
        name = select_handler(turn, ctx)
        logger.info(f"Routing turn: stage={ctx.stage.value if ctx.stage else None} → {name}")
        budget = TurnBudget(self.retriever, self.generator, self.classifier)
        handler = getattr(self, f"_handle_{name}")

        try:
            reply = handler(turn, ctx, budget)
        except MissingSessionState as e:
            logger.warning(f"Missing test session: {e}")
            response = self._error_response(ctx, RESTART_TESTS_MESSAGE,
                                             next_action="restart_diagnostic_tests")
            return Stage.ERROR, response, ctx

        new_ctx = project(reply.context.model_copy(update={"stage": reply.stage}))
        response = TurnResponse(
            stage=reply.stage,
            current_context=dump_context(new_ctx),
            **reply.payload,
        )
        logger.info(
            f"Turn done: → {reply.stage.value} "
            f"(retrieve={budget.calls['retrieve']}, generate={budget.calls['generate']}, "
            f"classify={budget.calls['classify']})"
        )
        return reply.stage, response, new_ctx

    def _error_response(self, ctx: ConversationContext, message: str, next_action: str) -> TurnResponse:
        return TurnResponse(
            stage           = Stage.ERROR,
            response        = message,
            current_context = dump_context(ctx),
            next_action     = next_action,
            ui_hint         = "error",
        )

    # ── Shared helpers ────────────────────────────────────────────────────────

    @staticmethod
    def _grounding(r: RetrievalResult) -> str:
        if r.rag_used and r.context.strip():
            sources = "\n".join(f"({s.number}) {s.title} — {s.url or 'No URL'}" for s in r.sources)
            return GROUNDED_BLOCK.format(context=r.context, sources=sources)
        return UNGROUNDED_BLOCK

    @staticmethod
    def _diagnosis_name(ctx: ConversationContext) -> str:
        if ctx.analysis and ctx.analysis.refined_diagnosis:
            return ctx.analysis.refined_diagnosis
        return ctx.diagnosis_name or ctx.current_details.injury_name or "your injury"

    @staticmethod
    def _plan_text(ctx: ConversationContext) -> str:
        lines: List[str] = []
        if ctx.refined_treatment_plan:
            p = ctx.refined_treatment_plan
            for label, items in (("Immediate", p.immediate), ("Week 1", p.week_1),
                                 ("Weeks 2-3", p.weeks_2_to_3), ("Ongoing", p.ongoing),
                                 ("Requires professional care", p.requires_professional_care)):
                if items:
                    lines.append(f"{label}: " + "; ".join(items))
        elif ctx.diagnosis_detail:
            p = ctx.diagnosis_detail.treatment_plan
            for label, items in (("Immediate", p.immediate), ("Ongoing", p.ongoing),
                                 ("Rehabilitation", p.rehabilitation)):
                if items:
                    lines.append(f"{label}: " + "; ".join(items))
        return "\n".join(lines) or "No treatment plan recorded yet."

    @staticmethod
    def _results_text(results: List[TestResult]) -> str:
        if not results:
            return "No tests completed."
        return "\n".join(
            f"  {i}. {r.test_name}: {r.result.value}"
            + (f" (pain {r.pain_level}/10)" if r.pain_level is not None else "")
            for i, r in enumerate(results, 1)
        )

    def _established(self, ctx: ConversationContext) -> str:
        lines = [f"Working diagnosis: {self._diagnosis_name(ctx)}"]
        if ctx.confirmed_diagnosis:
            lines.append("The user has confirmed this diagnosis.")
        if ctx.test_results:
            lines.append("Test results:\n" + self._results_text(ctx.test_results))
        lines.append("Treatment plan:\n" + self._plan_text(ctx))
        return "\n".join(lines)

    def _past_injuries_text(self, body_part: Optional[str], chat_id: Optional[str]) -> str:
        if not self.past_injuries:
            return ""
        try:
            return self.past_injuries(body_part, chat_id) or ""
        except Exception as e:
            logger.warning(f"Past injury lookup failed (non-fatal): {e}")
            return ""

    # ── Intake: gathering → diagnosis list ───────────────────────────────────

    def _advance_intake(self, turn: TurnRequest, ctx: ConversationContext,
                        budget: TurnBudget) -> Reply:
        details = ctx.current_details
        missing = self.policy.missing(details, ctx.interaction_count)

        if not missing:
            return self._diagnosis_list(turn, ctx, budget)

        count = self.policy.next_count(ctx.interaction_count)
        text = budget.generate(GATHERING_PROMPT.format(
            details = details_to_text(details),
            missing = describe_missing(missing),
            message = turn.message or "(selected symptoms from the checklist)",
        ))
        logger.info(f"Gathering info: missing={missing}, round {count}/{self.policy.max_rounds}")

        payload: Dict[str, Any] = {
            "response":     strip_structured(text),
            "missing_info": missing,
            "next_action":  "provide_details",
            "ui_hint":      "gathering_info",
        }
        if FIELD_SYMPTOMS in missing:
            payload["symptom_checklist"] = symptom_checklist(details)
            payload["ui_hint"] = "symptom_checklist"

        new_ctx = ctx.model_copy(update={
            "missing_info":      missing_fields(details),
            "interaction_count": count,
        })
        return Reply(Stage.GATHERING_INFO, new_ctx, payload)

    def _diagnosis_list(self, turn: TurnRequest, ctx: ConversationContext,
                        budget: TurnBudget) -> Reply:
        details = ctx.current_details
        query = turn.message.strip() or ", ".join(details.symptoms) or (details.body_part or "injury")
        r = budget.retrieve(
            query,
            body_part_id = hint_id(details.body_part),
            injury_id    = hint_id(details.injury_name) or ctx.diagnosis_id,
        )

        past = self._past_injuries_text(details.body_part, turn.chat_id)
        past_block = f"\nPast medical history (from previous chats):\n{past}\n" if past else ""

        if r.rag_used and r.context.strip():
            sources = "\n".join(f"({s.number}) {s.title} — {s.url or 'No URL'}" for s in r.sources)
            prompt = DIAGNOSIS_LIST_GROUNDED_PROMPT.format(
                details=details_to_text(details), past_injuries=past_block,
                context=r.context, sources=sources, message=turn.message,
            )
        else:
            prompt = DIAGNOSIS_LIST_UNGROUNDED_PROMPT.format(
                details=details_to_text(details), past_injuries=past_block, message=turn.message,
            )

        text = budget.generate(prompt)
        result, ok = parse_diagnosis_list(text)

        if ok and result.diagnoses:
            response = strip_structured(text) or "Based on what you've told me, these are the most likely possibilities."
        else:
            response = (
                "I couldn't narrow this down to specific possibilities yet. "
                + result.follow_up_question
            )

        logger.info(f"Diagnosis list: {len(result.diagnoses)} candidate(s), ragUsed={r.rag_used}")
        new_ctx = ctx.model_copy(update={"diagnoses": result.diagnoses, "missing_info": []})
        return Reply(Stage.DIAGNOSIS_LIST, new_ctx, {
            "response":           response,
            "diagnoses":          result.diagnoses,
            "immediate_advice":   result.immediate_advice,
            "follow_up_question": result.follow_up_question,
            "provenance":         r.provenance,
            "sources":            r.sources,
            "next_action":        "select_diagnosis" if result.diagnoses else "provide_details",
            "ui_hint":            "diagnosis_list",
        })

    # ── 1. Confirm injury ─────────────────────────────────────────────────────

    def _handle_confirm_injury(self, turn, ctx, budget) -> Reply:
        name = self._diagnosis_name(ctx)
        text = budget.generate(CONFIRMED_INJURY_PROMPT.format(
            diagnosis_name = name,
            details        = details_to_text(ctx.current_details),
            plan           = self._plan_text(ctx),
        ))
        results = ctx.test_session.test_results if ctx.test_session else ctx.test_results
        new_ctx = ctx.model_copy(update={
            "confirmed_diagnosis": True,
            "test_session":        None,
            "test_results":        list(results),
        })
        logger.info(f"Injury confirmed: {name}")
        return Reply(Stage.CONFIRMED_INJURY_CHAT, new_ctx, {
            "response":    strip_structured(text),
            "analysis":    ctx.analysis,
            "next_action": "ask_recovery_question",
            "ui_hint":     "confirmed_injury",
        })

    # ── 2. Start treatment chat ───────────────────────────────────────────────

    def _handle_start_treatment_chat(self, turn, ctx, budget) -> Reply:
        text = budget.generate(TREATMENT_INTRO_PROMPT.format(
            diagnosis_name = self._diagnosis_name(ctx),
            plan           = self._plan_text(ctx),
        ))
        results = ctx.test_session.test_results if ctx.test_session else ctx.test_results
        new_ctx = ctx.model_copy(update={"test_session": None, "test_results": list(results)})
        return Reply(Stage.TREATMENT_CHAT, new_ctx, {
            "response":    strip_structured(text),
            "analysis":    ctx.analysis,
            "next_action": "ask_treatment_question",
            "ui_hint":     "treatment_chat",
        })

    # ── 3. Exit diagnostic test ───────────────────────────────────────────────

    def _handle_exit_diagnostic_test(self, turn, ctx, budget) -> Reply:
        session_results = ctx.test_session.test_results if ctx.test_session else []
        results = list(session_results) or list(ctx.test_results)
        detail = ctx.diagnosis_detail or fallback_diagnosis_detail(None, ctx.diagnosis_name or "")
        new_ctx = ctx.model_copy(update={
            "test_session":     None,
            "test_results":     results,
            "diagnosis_detail": detail,
        })
        return Reply(Stage.DIAGNOSIS_DETAIL, new_ctx, {
            "response":         None,
            "diagnosis_detail": detail,
            "analysis":         ctx.analysis,
            "next_action":      "returned_from_test",
            "ui_hint":          "returned_from_test",
        })

    # ── 4. Symptom checklist submission ───────────────────────────────────────

    def _handle_submit_symptoms(self, turn, ctx, budget) -> Reply:
        selected = turn.action_flags.selected_symptoms or []
        details = add_symptoms(ctx.current_details, selected)
        logger.info(f"Checklist submitted: {len(selected)} symptom(s)")
        return self._advance_intake(turn, ctx.model_copy(update={"current_details": details}), budget)

    # ── 5. Diagnostic test response ───────────────────────────────────────────

    def _handle_test_response(self, turn, ctx, budget) -> Reply:
        session = ctx.test_session
        if session is None or not session.test_plan or ctx.stage not in TEST_STAGES:
            raise MissingSessionState(f"test response in stage {ctx.stage} without a test session")
        if session.phase in (TestPhase.STEP, TestPhase.RESULT) and current_test(session) is None:
            raise MissingSessionState(
                f"test session in phase {session.phase.value} points past its last test "
                f"({session.current_test_index}/{len(session.test_plan)})"
            )

        action = turn.action_flags.test_response
        before = session.phase
        new_session = apply_action(session, action)
        stage = stage_for(new_session)
        logger.info(f"Test action '{action.action}': {before.value} → {new_session.phase.value}")

        update: Dict[str, Any] = {"test_session": new_session}
        payload: Dict[str, Any] = {
            "response":    None,
            "next_action": action.action,
            "ui_hint":     "diagnostic_test",
        }

        if new_session.phase == TestPhase.COMPLETE and before != TestPhase.COMPLETE:
            name = self._diagnosis_name(ctx)
            text = budget.generate(RESULT_ANALYSIS_PROMPT.format(
                diagnosis_name = name,
                details        = details_to_text(ctx.current_details),
                results        = self._results_text(new_session.test_results),
            ))
            analysis, _ = parse_analysis(text, name)
            update.update({
                "analysis":               analysis,
                "refined_treatment_plan": analysis.treatment_plan,
                "test_results":           list(new_session.test_results),
            })
            payload.update({
                "response":    analysis.summary,
                "analysis":    analysis,
                "next_action": "start_treatment_chat",
                "ui_hint":     "test_complete",
            })
        elif new_session.phase == TestPhase.STOPPED:
            update["test_results"] = list(new_session.test_results)
            payload.update({"next_action": "exit_test", "ui_hint": "test_stopped"})
        elif new_session.phase == TestPhase.STEP:
            payload["next_action"] = "next_step"
        elif new_session.phase == TestPhase.RESULT:
            payload["next_action"] = "submit_result"
        elif new_session.phase == TestPhase.TRANSITION:
            payload["next_action"] = "start_test"

        view = session_view(new_session)
        if payload["response"] is None and "message" in view:
            payload["response"] = view["message"]
        payload["test_session"] = view
        return Reply(stage, ctx.model_copy(update=update), payload)

    # ── 6. Start diagnostic test ──────────────────────────────────────────────

    def _handle_start_diagnostic_test(self, turn, ctx, budget) -> Reply:
        if not ctx.diagnosis_id:
            stage = Stage.DIAGNOSIS_LIST if ctx.diagnoses else (ctx.stage or Stage.GENERAL)
            if stage in TEST_STAGES:
                stage = Stage.CONVERSATIONAL
            return Reply(stage, ctx, {
                "response":    "Please choose one of the possible diagnoses first, then I can guide you through tests for it.",
                "diagnoses":   ctx.diagnoses or None,
                "next_action": "select_diagnosis",
                "ui_hint":     "diagnosis_list" if ctx.diagnoses else "general",
            })

        name = ctx.diagnosis_name or ctx.diagnosis_id
        detail = ctx.diagnosis_detail
        r = budget.retrieve(
            f"self assessment tests for {name}",
            body_part_id = hint_id(ctx.current_details.body_part),
            injury_id    = ctx.diagnosis_id,
        )
        candidates = "\n".join(
            f"  • {t.name}: {t.description}" for t in (detail.diagnostic_tests if detail else [])
        ) or "  (none listed)"
        text = budget.generate(TEST_PLAN_PROMPT.format(
            diagnosis_name  = name,
            details         = details_to_text(ctx.current_details),
            candidate_tests = candidates,
            grounding       = self._grounding(r),
        ))
        plan, _ = parse_test_plan(text, detail)

        if not plan.tests:
            logger.warning(f"No usable self-tests for '{name}'")
            return Reply(Stage.DIAGNOSIS_DETAIL, ctx, {
                "response":         "There are no safe self-tests I can guide you through for this diagnosis. "
                                    "A physiotherapist or doctor can examine it properly.",
                "diagnosis_detail": detail,
                "next_action":      "confirm_or_back",
                "ui_hint":          "diagnosis_detail",
            })

        session = start_session(plan)
        logger.info(f"Test session started: {len(session.test_plan)} test(s) for '{name}'")
        new_ctx = ctx.model_copy(update={"test_session": session})
        return Reply(Stage.DIAGNOSTIC_TEST_INTRO, new_ctx, {
            "response":     session.introduction,
            "test_session": session_view(session),
            "provenance":   r.provenance,
            "sources":      r.sources,
            "next_action":  "start_test",
            "ui_hint":      "diagnostic_test",
        })

    # ── 7. Diagnosis detail ───────────────────────────────────────────────────

    def _handle_diagnosis_detail(self, turn, ctx, budget) -> Reply:
        diagnosis_id = turn.action_flags.diagnosis_id
        diagnosis: Optional[Diagnosis] = next((d for d in ctx.diagnoses if d.id == diagnosis_id), None)
        if diagnosis:
            name = diagnosis.name
        elif diagnosis_id == ctx.diagnosis_id and ctx.diagnosis_name:
            name = ctx.diagnosis_name
        else:
            name = diagnosis_id.replace("_", " ").strip().title()

        r = budget.retrieve(
            f"{name} symptoms causes treatment recovery",
            body_part_id = hint_id(ctx.current_details.body_part),
            injury_id    = diagnosis_id,
        )
        text = budget.generate(DIAGNOSIS_DETAIL_PROMPT.format(
            diagnosis_name    = name,
            diagnosis_summary = diagnosis.short_description if diagnosis else "Not available",
            details           = details_to_text(ctx.current_details),
            grounding         = self._grounding(r),
        ))
        detail, _ = parse_diagnosis_detail(text, diagnosis, name)

        update: Dict[str, Any] = {
            "diagnosis_id":     diagnosis_id,
            "diagnosis_name":   name,
            "diagnosis_detail": detail,
        }
        if diagnosis_id != ctx.diagnosis_id:
            update.update({
                "test_session":           None,
                "analysis":               None,
                "refined_treatment_plan": None,
                "test_results":           [],
                "confirmed_diagnosis":    False,
            })
        return Reply(Stage.DIAGNOSIS_DETAIL, ctx.model_copy(update=update), {
            "response":         None,
            "diagnosis_detail": detail,
            "provenance":       r.provenance,
            "sources":          r.sources,
            "next_action":      "start_diagnostic_test_or_confirm",
            "ui_hint":          "diagnosis_detail",
        })

    # ── 8/9. Intake follow-up (re-classification) ─────────────────────────────

    def _handle_intake_follow_up(self, turn, ctx, budget) -> Reply:
        details = ctx.current_details
        if turn.message.strip():
            classification = budget.classify(turn.message, ctx, turn)
            if classification is not None:
                details = merge_details(details, classification.details)
        return self._advance_intake(turn, ctx.model_copy(update={"current_details": details}), budget)

    # ── 10/11/12. Chat follow-ups ─────────────────────────────────────────────

    def _chat_follow_up(self, turn, ctx, budget, focus: str) -> Tuple[str, RetrievalResult]:
        r = budget.retrieve(
            turn.message.strip() or self._diagnosis_name(ctx),
            body_part_id = hint_id(ctx.current_details.body_part),
            injury_id    = ctx.diagnosis_id,
        )
        text = budget.generate(FOLLOW_UP_CHAT_PROMPT.format(
            focus       = focus,
            details     = details_to_text(ctx.current_details),
            established = self._established(ctx),
            grounding   = self._grounding(r),
            history     = format_history(turn.chat_history),
            message     = turn.message,
        ))
        return strip_structured(text), r

    def _handle_treatment_follow_up(self, turn, ctx, budget) -> Reply:
        text, r = self._chat_follow_up(turn, ctx, budget, "treatment and rehabilitation questions")
        return Reply(Stage.TREATMENT_CHAT, ctx, {
            "response":    text,
            "provenance":  r.provenance,
            "sources":     r.sources,
            "next_action": "ask_treatment_question",
            "ui_hint":     "treatment_chat",
        })

    def _handle_confirmed_follow_up(self, turn, ctx, budget) -> Reply:
        text, r = self._chat_follow_up(turn, ctx, budget, "recovery from a confirmed injury")
        return Reply(Stage.CONFIRMED_INJURY_CHAT, ctx, {
            "response":    text,
            "provenance":  r.provenance,
            "sources":     r.sources,
            "next_action": "ask_recovery_question",
            "ui_hint":     "confirmed_injury",
        })

    def _handle_conversational_follow_up(self, turn, ctx, budget) -> Reply:
        text, r = self._chat_follow_up(turn, ctx, budget, "general questions about the injury being assessed")
        payload = {
            "response":    text,
            "provenance":  r.provenance,
            "sources":     r.sources,
            "next_action": "continue",
            "ui_hint":     "conversational",
        }
        # A question asked mid-test must not throw the test session away.
        if ctx.stage in TEST_STAGES and ctx.test_session is not None:
            payload["test_session"] = session_view(ctx.test_session)
            payload["ui_hint"] = "test_question"
            return Reply(ctx.stage, ctx, payload)
        return Reply(Stage.CONVERSATIONAL, ctx, payload)

    # ── 13. Fresh classification ──────────────────────────────────────────────

    def _handle_classify(self, turn, ctx, budget) -> Reply:
        if not turn.message.strip():
            return self._off_topic(ctx)

        classification = budget.classify(turn.message, ctx, turn)
        if classification is None:
            logger.warning("Classifier output unusable; treating message as an injury description")
            category, extracted = "injury", None
        else:
            category, extracted = classification.category, classification.details

        if category == "injury":
            details = merge_details(ctx.current_details, extracted) if extracted else ctx.current_details
            return self._advance_intake(turn, ctx.model_copy(update={"current_details": details}), budget)

        if category == "general_health":
            r = budget.retrieve(turn.message)
            text = budget.generate(GENERAL_HEALTH_PROMPT.format(
                grounding = self._grounding(r),
                message   = turn.message,
            ))
            return Reply(Stage.GENERAL, ctx, {
                "response":    strip_structured(text),
                "provenance":  r.provenance,
                "sources":     r.sources,
                "next_action": "continue",
                "ui_hint":     "general_health",
            })

        return self._off_topic(ctx)

    def _off_topic(self, ctx: ConversationContext) -> Reply:
        return Reply(Stage.GENERAL, ctx, {
            "response":    OFF_TOPIC_RESPONSE,
            "next_action": "describe_injury",
            "ui_hint":     "off_topic",
        })
