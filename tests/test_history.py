"""
Tests for the chat store, chat titles, turn persistence and past injuries.
"""

import pytest

from healthbay.context import dump_context
from healthbay.errors import PersistenceFailure
from healthbay.history import (
    InMemoryChatStore,
    chat_title,
    format_past_injuries,
    past_injury_lookup,
    persist_turn,
    relevant_past_injuries,
)
from healthbay.models import (
    ConversationContext,
    InjuryDetails,
    ResultAnalysis,
    Stage,
    TurnRequest,
    TurnResponse,
)


def ctx_with(**details):
    return ConversationContext(stage=Stage.GATHERING_INFO, current_details=InjuryDetails(**details))


# ─────────────────────────────────────────────
# Store
# ─────────────────────────────────────────────

def test_store_upsert_append_and_list():
    store = InMemoryChatStore()
    store.upsert_chat("a", title="Knee Pain")
    store.append_message("a", "user", "my knee hurts")
    store.upsert_chat("b")

    assert [c["id"] for c in store.list_chats()] == ["b", "a"]
    assert store.get_chat("a")["title"] == "Knee Pain"
    assert store.get_chat("b")["title"] == "New Consultation"
    assert store.get_messages("a")[0]["text"] == "my knee hurts"


def test_append_to_unknown_chat_fails():
    with pytest.raises(PersistenceFailure):
        InMemoryChatStore().append_message("nope", "user", "hi")


def test_delete_chat():
    store = InMemoryChatStore()
    store.upsert_chat("a")
    assert store.delete_chat("a") is True
    assert store.delete_chat("a") is False
    assert store.get_messages("a") == []


# ─────────────────────────────────────────────
# Titles
# ─────────────────────────────────────────────

@pytest.mark.parametrize("details, expected", [
    ({"body_part": "knee", "symptoms": ["sharp pain", "swelling"]}, "Knee Pain with Swelling"),
    ({"body_part": "knee", "symptoms": ["pain", "stiffness"]}, "Knee Pain & Stiffness"),
    ({"body_part": "knee", "symptoms": ["pain", "swelling", "stiffness"]},
     "Knee Pain with Swelling & Stiffness (+2 more)"),
    ({"body_part": "ankle", "symptoms": ["swelling"]}, "Ankle Swelling"),
    ({"body_part": "wrist"}, "Wrist Issue"),
    ({"symptoms": ["dizziness"]}, "dizziness"),
    ({"symptoms": ["a", "b"]}, "a & b"),
    ({"symptoms": ["a", "b", "c", "d"]}, "a, b & 2 more"),
    ({"injury_name": "ACL Tear", "body_part": "knee"}, "ACL Tear"),
    ({}, "Health Consultation"),
])
def test_chat_titles(details, expected):
    assert chat_title(ctx_with(**details)) == expected


def test_refined_diagnosis_wins_title():
    ctx = ConversationContext(
        current_details=InjuryDetails(body_part="knee", severity="moderate"),
        analysis=ResultAnalysis(refined_diagnosis="Grade 1 MCL Sprain"),
    )
    assert chat_title(ctx) == "Grade 1 MCL Sprain (Moderate)"


# ─────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────

def test_persist_turn_records_messages_and_summary():
    store = InMemoryChatStore()
    ctx = ctx_with(body_part="knee", symptoms=["swelling"])
    response = TurnResponse(stage=Stage.GATHERING_INFO, response="How long?",
                            current_context=dump_context(ctx), next_action="answer_question")

    assert persist_turn(store, "c1", TurnRequest(message="knee is swollen"), response, ctx)

    chat = store.get_chat("c1")
    assert chat["title"] == "Knee Swelling"
    assert chat["summary"] == "Gathering info · knee · swelling"
    assert chat["bodyPart"] == "knee"
    assert chat["contextSummary"]["stage"] == "GATHERING_INFO"

    user, assistant = store.get_messages("c1")
    assert user["role"] == "user"
    assert assistant["role"] == "assistant"
    assert assistant["metadata"]["stage"] == "GATHERING_INFO"
    assert assistant["metadata"]["nextAction"] == "answer_question"
    assert assistant["metadata"]["contextSummary"] == chat["contextSummary"]
    assert assistant["metadata"]["contextSummary"]["currentDetails"]["body_part"] == "knee"


def test_message_metadata_defaults_to_empty():
    store = InMemoryChatStore()
    store.upsert_chat("a")
    store.append_message("a", "user", "hi")
    store.append_message("a", "assistant", "hello", metadata={"stage": "GENERAL"})
    assert [m["metadata"] for m in store.get_messages("a")] == [{}, {"stage": "GENERAL"}]


class BrokenStore(InMemoryChatStore):
    def append_message(self, chat_id, role, text, metadata=None):
        raise OSError("disk full")


def test_persist_turn_failure_is_not_fatal():
    ctx = ctx_with(body_part="knee")
    response = TurnResponse(stage=Stage.GATHERING_INFO, response="ok")
    assert persist_turn(BrokenStore(), "c1", TurnRequest(message="hi"), response, ctx) is False


def test_error_turn_does_not_overwrite_summary():
    store = InMemoryChatStore()
    store.upsert_chat("c1", title="Knee Pain", summary="Diagnosis list · knee",
                      contextSummary={"stage": "DIAGNOSIS_LIST"})
    ctx = ConversationContext()
    response = TurnResponse(stage=Stage.ERROR, response="Sorry")

    persist_turn(store, "c1", TurnRequest(message="hi"), response, ctx)

    assert store.get_chat("c1")["title"] == "Knee Pain"
    assert store.get_chat("c1")["contextSummary"] == {"stage": "DIAGNOSIS_LIST"}
    assert store.get_chat("c1")["summary"] == "Diagnosis list · knee"


# ─────────────────────────────────────────────
# Past injuries
# ─────────────────────────────────────────────

def seeded_store():
    store = InMemoryChatStore()
    for chat_id, part in [("c1", "lower back"), ("c2", "knee"), ("c3", "shoulder"),
                          ("c4", "upper back"), ("c5", "ankle")]:
        store.upsert_chat(chat_id, bodyPart=part, symptoms=["pain"], title=f"{part} pain")
    return store


def test_related_body_parts_are_found():
    store = seeded_store()
    assert {p["bodyPart"] for p in relevant_past_injuries(store, "middle back")} == {"lower back", "upper back"}
    assert [p["bodyPart"] for p in relevant_past_injuries(store, "leg")] == ["knee"]
    assert [p["bodyPart"] for p in relevant_past_injuries(store, "arm")] == ["shoulder"]
    assert relevant_past_injuries(store, "ankle")[0]["bodyPart"] == "ankle"
    assert relevant_past_injuries(store, None) == []


def test_current_chat_is_excluded_and_capped():
    store = InMemoryChatStore()
    for i in range(5):
        store.upsert_chat(f"c{i}", bodyPart="knee", symptoms=["swelling"])
    found = relevant_past_injuries(store, "knee", exclude_chat_id="c4")
    assert len(found) == 3


def test_lookup_formats_for_prompt():
    store = seeded_store()
    text = past_injury_lookup(store)("knee", None)
    assert text.startswith("1. ")
    assert "knee: pain" in text
    assert format_past_injuries([]) == ""
