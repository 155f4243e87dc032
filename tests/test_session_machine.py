"""
Tests for the diagnostic test session state machine.
"""

import pytest

from conftest import make_plan
from healthbay.models import Stage, TestAction, TestOutcome, TestPhase, TestPlan
from healthbay.session_machine import (
    apply_action,
    progress,
    progress_percentage,
    session_view,
    stage_for,
    start_session,
)


def act(action, **kwargs):
    return TestAction(action=action, **kwargs)


def run(session, *actions):
    for a in actions:
        session = apply_action(session, a)
    return session


def test_start_session_is_intro():
    session = start_session(make_plan())
    assert session.phase == TestPhase.INTRO
    assert stage_for(session) == Stage.DIAGNOSTIC_TEST_INTRO
    assert session.introduction
    assert session.safety_warning


def test_full_walkthrough_records_results_in_order():
    session = run(
        start_session(make_plan((2, 1, 3))),
        act("next_step"), act("next_step"), act("submit_result", result="positive"),
        act("submit_result", result="negative"),
        act("next_step"), act("next_step"), act("next_step"), act("submit_result", result="unsure"),
    )

    assert session.phase == TestPhase.COMPLETE
    assert stage_for(session) == Stage.DIAGNOSTIC_TEST_COMPLETE
    assert [r.result for r in session.test_results] == [
        TestOutcome.POSITIVE, TestOutcome.NEGATIVE, TestOutcome.UNSURE,
    ]
    assert [r.test_id for r in session.test_results] == ["t1", "t2", "t3"]


def test_strict_path_through_every_phase():
    session = start_session(make_plan((2, 1)))
    session = apply_action(session, act("start_test"))
    assert (session.phase, session.current_step_index) == (TestPhase.STEP, 0)

    session = apply_action(session, act("next_step"))
    assert (session.phase, session.current_step_index) == (TestPhase.STEP, 1)

    session = apply_action(session, act("next_step"))
    assert session.phase == TestPhase.RESULT

    session = apply_action(session, act("submit_result", result="positive"))
    assert session.phase == TestPhase.TRANSITION
    assert session.current_test_index == 1

    session = apply_action(session, act("start_test"))
    assert session.phase == TestPhase.STEP
    session = apply_action(session, act("next_step"))
    assert session.phase == TestPhase.RESULT
    session = apply_action(session, act("submit_result", result="negative"))
    assert session.phase == TestPhase.COMPLETE


def test_stop_mid_second_test_keeps_prior_result():
    session = run(
        start_session(make_plan((1, 3, 2))),
        act("start_test"), act("next_step"), act("submit_result", result="positive"),
        act("start_test"), act("next_step"),
        act("stop_test", reason="user_choice"),
    )

    assert session.phase == TestPhase.STOPPED
    assert stage_for(session) == Stage.DIAGNOSTIC_TEST_STOPPED
    assert session.stopped is True
    assert len(session.test_results) == 1


FIRST_TEST_DONE = (act("start_test"), act("next_step"), act("next_step"),
                   act("submit_result", result="positive"))


@pytest.mark.parametrize("phase, actions", [
    (TestPhase.INTRO,      ()),
    (TestPhase.STEP,       FIRST_TEST_DONE + (act("start_test"),)),
    (TestPhase.RESULT,     FIRST_TEST_DONE + (act("start_test"), act("next_step"), act("next_step"))),
    (TestPhase.TRANSITION, FIRST_TEST_DONE),
])
def test_stop_from_any_running_phase_keeps_results(phase, actions):
    session = run(start_session(make_plan((2, 2, 2))), *actions)
    assert session.phase == phase
    before = [r.model_copy() for r in session.test_results]

    stopped = apply_action(session, act("stop_test", reason="pain"))

    assert stopped.phase == TestPhase.STOPPED
    assert stage_for(stopped) == Stage.DIAGNOSTIC_TEST_STOPPED
    assert stopped.stopped is True
    assert stopped.test_results == before


def test_submit_stopped_records_then_stops():
    session = run(
        start_session(make_plan((1, 1))),
        act("start_test"), act("next_step"),
        act("submit_result", result="stopped", pain_level=8),
    )
    assert session.phase == TestPhase.STOPPED
    assert session.stop_reason == "too_painful"
    assert [r.result for r in session.test_results] == [TestOutcome.STOPPED]
    assert session.test_results[0].pain_level == 8


def test_terminal_sessions_ignore_actions():
    done = run(start_session(make_plan((1,))), act("start_test"), act("next_step"),
               act("submit_result", result="positive"))
    assert done.phase == TestPhase.COMPLETE

    for a in (act("start_test"), act("next_step"), act("stop_test"),
              act("submit_result", result="negative")):
        after = apply_action(done, a)
        assert after.phase == TestPhase.COMPLETE
        assert len(after.test_results) == 1


def test_apply_action_does_not_mutate_input():
    session = start_session(make_plan())
    apply_action(session, act("start_test"))
    assert session.phase == TestPhase.INTRO


def test_submit_without_result_is_ignored():
    session = run(start_session(make_plan()), act("start_test"))
    after = apply_action(session, act("submit_result"))
    assert after == session


def test_test_without_steps_goes_straight_to_result():
    plan = make_plan((0, 1))
    session = apply_action(start_session(plan), act("start_test"))
    assert session.phase == TestPhase.RESULT


@pytest.mark.parametrize("step_counts", [(1,), (2, 1, 3), (3, 3), (1, 1, 1, 1)])
def test_next_step_always_advances_or_reaches_result(step_counts):
    session = run(start_session(make_plan(step_counts)), act("start_test"))
    for test_index, steps in enumerate(step_counts):
        for step in range(steps):
            assert session.phase == TestPhase.STEP
            assert session.current_step_index == step
            session = apply_action(session, act("next_step"))
        assert session.phase == TestPhase.RESULT
        session = apply_action(session, act("submit_result", result="unsure"))
        if test_index + 1 < len(step_counts):
            assert session.phase == TestPhase.TRANSITION
            session = apply_action(session, act("start_test"))
    assert session.phase == TestPhase.COMPLETE
    assert len(session.test_results) == len(step_counts)


def test_progress_never_decreases():
    session = start_session(make_plan((2, 1, 3)))
    actions = [act("start_test"), act("next_step"), act("next_step"), act("submit_result", result="positive"),
               act("start_test"), act("next_step"), act("submit_result", result="negative"),
               act("start_test"), act("next_step"), act("next_step"), act("next_step"),
               act("submit_result", result="unsure")]
    seen = [progress_percentage(session)]
    for a in actions:
        session = apply_action(session, a)
        seen.append(progress_percentage(session))

    assert seen == sorted(seen)
    assert seen[0] == 0
    assert seen[-1] == 100


def test_empty_plan_progress():
    session = start_session(TestPlan())
    assert progress_percentage(session) == 0
    assert progress(session)["totalTests"] == 0


def test_progress_fields():
    session = run(start_session(make_plan((2, 2))), act("start_test"), act("next_step"))
    p = progress(session)
    assert p == {"testNumber": 1, "totalTests": 2, "percentage": 25}


def test_views_per_phase():
    session = start_session(make_plan((1, 1)))
    assert "introduction" in session_view(session)

    session = apply_action(session, act("start_test"))
    view = session_view(session)
    assert view["currentTest"]["stepInstruction"] == "step 1"
    assert view["stage"] == "DIAGNOSTIC_TEST_STEP"

    session = apply_action(session, act("next_step"))
    assert "question" in session_view(session)

    session = apply_action(session, act("submit_result", result="positive"))
    view = session_view(session)
    assert view["completedTest"] == {"name": "Test 1", "result": "positive"}
    assert view["nextTest"]["name"] == "Test 2"

    stopped = apply_action(session, act("stop_test", reason="pain"))
    view = session_view(stopped)
    assert "recommendation" in view
    assert len(view["partialResults"]) == 1
