"""
healthbay/session_machine.py — diagnostic test session state machine
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

  INTRO ──start_test──▶ STEP ──next_step (last)──▶ RESULT ──submit_result──▶ TRANSITION
                         │ ▲                          │                         │
                         └─┘ next_step                │ (last test)             │ start_test
                                                      ▼                         ▼
                                                   COMPLETE                    STEP

  stop_test from any non-terminal phase ──▶ STOPPED

Tolerances the mobile client relies on:
  • next_step in INTRO / TRANSITION behaves like start_test
  • submit_result is accepted from any running phase (users may answer early)
  • anything else that does not apply is ignored and the session is returned unchanged

apply_action() never mutates its input. Results already recorded are never
dropped or duplicated, whatever the action.
"""

import logging
from typing import Dict, Optional

from healthbay.models import (
    Stage,
    Test,
    TestAction,
    TestOutcome,
    TestPhase,
    TestPlan,
    TestResult,
    TestSession,
)

logger = logging.getLogger(__name__)


PHASE_TO_STAGE = {
    TestPhase.INTRO:      Stage.DIAGNOSTIC_TEST_INTRO,
    TestPhase.STEP:       Stage.DIAGNOSTIC_TEST_STEP,
    TestPhase.RESULT:     Stage.DIAGNOSTIC_TEST_RESULT,
    TestPhase.TRANSITION: Stage.DIAGNOSTIC_TEST_TRANSITION,
    TestPhase.STOPPED:    Stage.DIAGNOSTIC_TEST_STOPPED,
    TestPhase.COMPLETE:   Stage.DIAGNOSTIC_TEST_COMPLETE,
}
TERMINAL_PHASES = frozenset({TestPhase.STOPPED, TestPhase.COMPLETE})

DEFAULT_INTRODUCTION = (
    "These self-assessment tests use simple movements and positions to check how "
    "your injury behaves. They help narrow down which diagnosis fits best."
)
DEFAULT_SAFETY_WARNING = (
    "Move slowly and stop immediately if any step causes severe or sharp pain. "
    "These tests do not replace an examination by a healthcare professional."
)
RESULT_QUESTION = "Did this test reproduce your symptoms or show what it was looking for?"


# ─────────────────────────────────────────────
# Construction
# ─────────────────────────────────────────────

def start_session(plan: TestPlan) -> TestSession:
    return TestSession(
        test_plan      = list(plan.tests),
        phase          = TestPhase.INTRO,
        introduction   = plan.introduction or DEFAULT_INTRODUCTION,
        safety_warning = plan.safety_warning or DEFAULT_SAFETY_WARNING,
    )


def stage_for(session: TestSession) -> Stage:
    return PHASE_TO_STAGE[session.phase]


def is_terminal(session: TestSession) -> bool:
    return session.phase in TERMINAL_PHASES


def current_test(session: TestSession) -> Optional[Test]:
    if session.current_test_index < len(session.test_plan):
        return session.test_plan[session.current_test_index]
    return None


# ─────────────────────────────────────────────
# Transitions
# ─────────────────────────────────────────────

def apply_action(session: TestSession, action: TestAction) -> TestSession:
    nxt = session.model_copy(deep=True)
    phase = nxt.phase

    if phase in TERMINAL_PHASES:
        logger.warning(f"Test action '{action.action}' ignored: session already {phase.value}")
        return nxt

    if action.action == "stop_test":
        return _stop(nxt, action.reason or "user_choice")

    if action.action == "submit_result":
        if action.result is None:
            logger.warning("submit_result without a result ignored")
            return nxt
        return _record(nxt, action)

    if action.action == "start_test":
        if phase in (TestPhase.INTRO, TestPhase.TRANSITION):
            return _enter_step(nxt)
        logger.warning(f"start_test ignored in phase {phase.value}")
        return nxt

    if action.action == "next_step":
        if phase in (TestPhase.INTRO, TestPhase.TRANSITION):
            return _enter_step(nxt)
        if phase == TestPhase.STEP:
            steps = len(nxt.test_plan[nxt.current_test_index].steps)
            if nxt.current_step_index + 1 < steps:
                nxt.current_step_index += 1
            else:
                nxt.phase = TestPhase.RESULT
            return nxt
        logger.warning(f"next_step ignored in phase {phase.value}")
        return nxt

    return nxt


def _enter_step(session: TestSession) -> TestSession:
    test = current_test(session)
    if test is None:
        session.phase = TestPhase.COMPLETE
        return session
    session.current_step_index = 0
    session.phase = TestPhase.STEP if test.steps else TestPhase.RESULT
    return session


def _stop(session: TestSession, reason: str) -> TestSession:
    session.stopped     = True
    session.stop_reason = reason
    session.phase       = TestPhase.STOPPED
    logger.info(f"Test session stopped ({reason}) with {len(session.test_results)} result(s) kept")
    return session


def _record(session: TestSession, action: TestAction) -> TestSession:
    test = current_test(session)
    if test is None:
        session.phase = TestPhase.COMPLETE
        return session

    session.test_results.append(TestResult(
        test_id    = test.id,
        test_name  = test.name,
        result     = action.result,
        pain_level = action.pain_level,
    ))

    if action.result == TestOutcome.STOPPED:
        return _stop(session, action.reason or "too_painful")

    session.current_test_index += 1
    session.current_step_index = 0
    if session.current_test_index >= len(session.test_plan):
        session.phase = TestPhase.COMPLETE
    else:
        session.phase = TestPhase.TRANSITION
    return session


# ─────────────────────────────────────────────
# Progress
# ─────────────────────────────────────────────

def progress_percentage(session: TestSession) -> int:
    """
    round(100 * completed_units / total_tests). A test counts its step
    fraction while being walked through and one whole unit once its result
    is in; the value never goes down across a session.
    """
    total = len(session.test_plan)
    if total == 0:
        return 100 if session.phase == TestPhase.COMPLETE else 0

    units = float(session.current_test_index)
    test = current_test(session)
    if test is not None and test.steps and session.phase in (
        TestPhase.STEP, TestPhase.RESULT, TestPhase.STOPPED
    ):
        units += session.current_step_index / len(test.steps)
    return round(100 * units / total)


def progress(session: TestSession) -> Dict:
    total = len(session.test_plan)
    return {
        "testNumber": min(session.current_test_index + 1, total),
        "totalTests": total,
        "percentage": progress_percentage(session),
    }


# ─────────────────────────────────────────────
# UI views
# ─────────────────────────────────────────────

def _test_card(session: TestSession, test: Test) -> Dict:
    steps = test.steps
    index = min(session.current_step_index, max(len(steps) - 1, 0))
    return {
        "id":              test.id,
        "name":            test.name,
        "purpose":         test.purpose,
        "estimatedTime":   test.estimated_time,
        "stepNumber":      index + 1 if steps else 0,
        "totalSteps":      len(steps),
        "stepInstruction": steps[index] if steps else "",
        "whatToLookFor":   test.what_to_look_for,
        "safetyNote":      test.safety_note or None,
    }


def _stopped_copy(session: TestSession) -> Dict:
    if session.stop_reason in ("pain", "too_painful"):
        message = (
            "Testing was stopped because it caused too much pain. That is the right call: "
            "never push through sharp or severe pain."
        )
        recommendation = (
            "Pain strong enough to stop a gentle self-test is worth having examined. "
            "Please book an appointment with a doctor or physiotherapist, and seek urgent "
            "care if the pain keeps increasing or you cannot bear weight."
        )
    else:
        message = "Testing was stopped before all tests were completed."
        recommendation = (
            "The results you did complete are kept. You can go back to your diagnosis, "
            "or restart the tests later when you feel ready."
        )
    return {"message": message, "recommendation": recommendation}


def session_view(session: TestSession) -> Dict:
    """Payload the client renders for the current test phase."""
    view = {
        "stage":       stage_for(session).value,
        "phase":       session.phase.value,
        "totalTests":  len(session.test_plan),
        "progress":    progress(session),
    }
    phase = session.phase
    test = current_test(session)

    if phase == TestPhase.INTRO:
        view.update({
            "introduction":  session.introduction,
            "safetyWarning": session.safety_warning,
            "tests":         [{"name": t.name, "purpose": t.purpose} for t in session.test_plan],
        })
    elif phase == TestPhase.STEP and test is not None:
        view["currentTest"] = _test_card(session, test)
    elif phase == TestPhase.RESULT and test is not None:
        view["currentTest"] = _test_card(session, test)
        view["question"] = RESULT_QUESTION
    elif phase == TestPhase.TRANSITION and test is not None:
        last = session.test_results[-1] if session.test_results else None
        view["completedTest"] = (
            {"name": last.test_name, "result": last.result.value} if last else None
        )
        view["nextTest"] = {"name": test.name, "purpose": test.purpose}
    elif phase == TestPhase.STOPPED:
        view.update(_stopped_copy(session))
        view["partialResults"] = [r.model_dump(by_alias=True, mode="json") for r in session.test_results]
    elif phase == TestPhase.COMPLETE:
        view["results"] = [r.model_dump(by_alias=True, mode="json") for r in session.test_results]
    return view
