"""
scripts/run_cli.py
Talk to the assistant interactively in a terminal. The conversation context
is held here, the way the mobile client holds it, and echoed back each turn.

Usage:
    python scripts/run_cli.py

Commands:
    /select <diagnosis_id>   open a diagnosis from the list
    /symptoms a, b, c        submit checklist symptoms
    /test                    start the diagnostic tests
    /next                    next step (or start the next test)
    /result <positive|negative|unsure|stopped> [pain 0-10]
    /stop                    stop testing
    /exit                    leave the tests, back to the diagnosis
    /confirm                 accept the diagnosis
    /treatment               start the treatment chat
    quit                     leave
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from healthbay.collaborators import build_collaborators
from healthbay.config import GROQ_API_KEY, VECTOR_DB_PATH, configure_logging
from healthbay.models import ActionFlags, ChatMessage, TestAction, TurnRequest, TurnResponse
from healthbay.router import StageRouter
from healthbay.vector_store_setup import load_faiss_store


def parse_command(line: str):
    """'/result positive 4' → (ActionFlags, message). Plain text → (empty flags, text)."""
    if not line.startswith("/"):
        return ActionFlags(), line

    cmd, _, arg = line[1:].partition(" ")
    cmd, arg = cmd.lower(), arg.strip()

    if cmd == "select" and arg:
        return ActionFlags(diagnosis_id=arg), ""
    if cmd == "symptoms":
        return ActionFlags(selected_symptoms=[s.strip() for s in arg.split(",") if s.strip()]), ""
    if cmd == "test":
        return ActionFlags(start_diagnostic_test=True), ""
    if cmd == "next":
        return ActionFlags(test_response=TestAction(action="next_step")), ""
    if cmd == "result" and arg:
        parts = arg.split()
        pain = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else None
        return ActionFlags(test_response=TestAction(
            action="submit_result", result=parts[0].lower(), pain_level=pain,
        )), ""
    if cmd == "stop":
        return ActionFlags(test_response=TestAction(action="stop_test", reason=arg or "user_choice")), ""
    if cmd == "exit":
        return ActionFlags(exit_diagnostic_test=True), ""
    if cmd == "confirm":
        return ActionFlags(confirm_injury=True), ""
    if cmd == "treatment":
        return ActionFlags(start_treatment_chat=True), ""
    raise ValueError(f"Unknown command: /{cmd}")


def render(resp: TurnResponse):
    if resp.response:
        print(f"\nHealthBay: {resp.response}\n")

    if resp.symptom_checklist:
        print(f"  {resp.symptom_checklist.message}")
        for cat in resp.symptom_checklist.categories:
            print(f"   • {cat.category}: {', '.join(cat.symptoms)}")
        print("  (answer with /symptoms a, b, c)\n")

    if resp.diagnoses:
        print("  ┌─ Possible Diagnoses ─────────────────────────┐")
        for d in resp.diagnoses:
            print(f"  │ [{d.confidence.value:<6}] {d.name:<28} /select {d.id}")
        print("  └──────────────────────────────────────────────┘")
        for advice in resp.immediate_advice:
            print(f"   - {advice}")
        print()

    if resp.diagnosis_detail:
        d = resp.diagnosis_detail
        print(f"  {d.diagnosis_name}: {d.overview}")
        if d.estimated_recovery_time:
            print(f"  Recovery: {d.estimated_recovery_time}")
        print("  (/test to run self-tests, /confirm to accept)\n")

    view = resp.test_session
    if view:
        card = view.get("currentTest")
        if card:
            print(f"  Test {view['progress']['testNumber']}/{view['totalTests']}: {card['name']} "
                  f"— step {card['stepNumber']}/{card['totalSteps']} ({view['progress']['percentage']}%)")
            print(f"    {card['stepInstruction']}")
        if view.get("question"):
            print(f"  {view['question']}  (/result positive|negative|unsure)")
        if view.get("nextTest"):
            print(f"  Next: {view['nextTest']['name']}  (/next)")
        if view.get("recommendation"):
            print(f"  {view['recommendation']}  (/exit)")
        print()

    if resp.analysis:
        a = resp.analysis
        print(f"  Refined diagnosis: {a.refined_diagnosis} ({a.confidence.value} confidence)")
        print("  (/treatment for the plan, /confirm to accept)\n")

    if resp.provenance:
        print(f"  ℹ️  {resp.provenance}")


def main():
    configure_logging()
    print("\n" + "=" * 60)
    print("  HealthBay — Injury Assessment Assistant")
    print("  ⚠️  NOT a medical diagnosis tool.")
    print("      Always consult a licensed professional.")
    print("=" * 60 + "\n")

    # ── Load FAISS store (optional) ──────────────────────────────
    try:
        vs = load_faiss_store(VECTOR_DB_PATH)
    except Exception as e:
        print(f"⚠️  Could not load FAISS store: {e}")
        print("   Continuing without retrieval. Run: python scripts/index_documents.py")
        vs = None

    # ── Get Groq API key ─────────────────────────────────────────
    if not GROQ_API_KEY:
        print("❌ GROQ_API_KEY not set.")
        sys.exit(1)

    retriever, generator, classifier = build_collaborators(GROQ_API_KEY, vs)
    router = StageRouter(retriever, generator, classifier)

    context = None
    history = []

    print("HealthBay: Hi! Tell me what's hurting and what happened.\n")

    while True:
        try:
            user_input = input("You: ").strip()
            if not user_input:
                continue
            if user_input.lower() in ("quit", "bye", "q"):
                print("\nHealthBay: Take care, and see a professional if things get worse. Goodbye!")
                break

            try:
                flags, message = parse_command(user_input)
            except ValueError as e:
                print(f"  {e}\n")
                continue

            resp = router.handle_turn(TurnRequest(
                message=message,
                chat_history=history,
                current_context=context,
                action_flags=flags,
            ))
            context = resp.current_context

            if message:
                history.append(ChatMessage(role="user", text=message))
            if resp.response:
                history.append(ChatMessage(role="assistant", text=resp.response))

            print(f"  [{resp.stage.value}]")
            render(resp)

        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break


if __name__ == "__main__":
    main()
