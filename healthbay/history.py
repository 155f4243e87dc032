"""
healthbay/history.py — chat history persistence
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

Stores each chat's messages plus a summary projection of its context, so a
conversation can be listed, reopened and used as past medical history for
later chats. Persistence is best effort: a failing store is logged and the
turn still succeeds.
"""

import uuid
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from healthbay.context import summary_projection
from healthbay.errors import PersistenceFailure
from healthbay.models import ConversationContext, TurnRequest, TurnResponse, is_sentinel

logger = logging.getLogger(__name__)

MAX_PAST_INJURIES = 3

# current body part keyword → stored body part keywords that count as related
RELATED_BODY_PARTS = {
    "back":     ("back",),
    "leg":      ("knee", "leg"),
    "arm":      ("shoulder", "arm"),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ChatStore(Protocol):
    def upsert_chat(self, chat_id: str, **fields) -> Dict: ...
    def append_message(self, chat_id: str, role: str, text: str,
                       metadata: Optional[Dict] = None) -> Dict: ...
    def list_chats(self) -> List[Dict]: ...
    def get_chat(self, chat_id: str) -> Optional[Dict]: ...
    def get_messages(self, chat_id: str) -> List[Dict]: ...
    def delete_chat(self, chat_id: str) -> bool: ...


# ─────────────────────────────────────────────
# In-memory store
# ─────────────────────────────────────────────

class InMemoryChatStore:
    """Process-local ChatStore; chats are listed most recent first."""

    def __init__(self):
        self._chats: Dict[str, Dict] = {}
        self._messages: Dict[str, List[Dict]] = {}
        self._lock = threading.Lock()

    def upsert_chat(self, chat_id: str, **fields) -> Dict:
        with self._lock:
            # re-inserted so dict order is activity order
            chat = self._chats.pop(chat_id, None)
            if chat is None:
                chat = {
                    "id":             chat_id,
                    "title":          "New Consultation",
                    "summary":        "",
                    "status":         "active",
                    "createdAt":      _now(),
                    "contextSummary": {},
                }
                self._messages[chat_id] = []
            self._chats[chat_id] = chat
            chat.update(fields)
            chat["lastActivity"] = _now()
            return dict(chat)

    def append_message(self, chat_id: str, role: str, text: str,
                       metadata: Optional[Dict] = None) -> Dict:
        with self._lock:
            if chat_id not in self._chats:
                raise PersistenceFailure(f"chat '{chat_id}' does not exist")
            message = {"role": role, "text": text, "timestamp": _now(), "metadata": dict(metadata or {})}
            self._messages[chat_id].append(message)
            return dict(message)

    def list_chats(self) -> List[Dict]:
        with self._lock:
            return [dict(c) for c in reversed(list(self._chats.values()))]

    def get_chat(self, chat_id: str) -> Optional[Dict]:
        with self._lock:
            chat = self._chats.get(chat_id)
            return dict(chat) if chat else None

    def get_messages(self, chat_id: str) -> List[Dict]:
        with self._lock:
            return [dict(m) for m in self._messages.get(chat_id, [])]

    def delete_chat(self, chat_id: str) -> bool:
        with self._lock:
            self._messages.pop(chat_id, None)
            return self._chats.pop(chat_id, None) is not None


# ─────────────────────────────────────────────
# Titles
# ─────────────────────────────────────────────

def chat_title(ctx: ConversationContext) -> str:
    details = ctx.current_details
    symptoms = details.symptoms
    body_part = None if is_sentinel(details.body_part) else details.body_part.title()

    if ctx.analysis and ctx.analysis.refined_diagnosis:
        title = ctx.analysis.refined_diagnosis
        if details.severity.value != "unknown":
            title = f"{title} ({details.severity.value.title()})"
        return title

    if not is_sentinel(details.injury_name):
        return details.injury_name
    if ctx.diagnosis_name:
        return ctx.diagnosis_name

    if body_part:
        if not symptoms:
            return f"{body_part} Issue"
        primary = symptoms[0].lower()
        lowered = [s.lower() for s in symptoms]
        swelling = any("swell" in s for s in lowered)
        stiffness = any("stiff" in s for s in lowered)
        weakness = any("weak" in s for s in lowered)

        if "pain" in primary:
            if swelling and stiffness:
                title = f"{body_part} Pain with Swelling & Stiffness"
            elif swelling:
                title = f"{body_part} Pain with Swelling"
            elif stiffness:
                title = f"{body_part} Pain & Stiffness"
            elif weakness:
                title = f"{body_part} Pain & Weakness"
            else:
                title = f"{body_part} Pain"
        elif "swell" in primary:
            title = f"{body_part} Swelling"
        elif "stiff" in primary:
            title = f"{body_part} Stiffness"
        else:
            title = f"{body_part} {symptoms[0]}"

        if len(symptoms) > 2:
            title = f"{title} (+{len(symptoms) - 1} more)"
        return title

    if len(symptoms) == 1:
        return symptoms[0]
    if len(symptoms) == 2:
        return f"{symptoms[0]} & {symptoms[1]}"
    if symptoms:
        return f"{symptoms[0]}, {symptoms[1]} & {len(symptoms) - 2} more"

    return "Diagnostic Test Session" if ctx.test_results else "Health Consultation"


def chat_summary(ctx: ConversationContext) -> str:
    """One line for chat lists, e.g. 'Diagnosis list · knee · sharp pain, swelling'."""
    details = ctx.current_details
    stage = ctx.stage.value.replace("_", " ").capitalize() if ctx.stage else "New"
    parts = [stage]
    if not is_sentinel(details.body_part):
        parts.append(details.body_part)
    if details.symptoms:
        parts.append(", ".join(details.symptoms))
    if ctx.analysis and ctx.analysis.refined_diagnosis:
        parts.append(f"refined to {ctx.analysis.refined_diagnosis}")
    elif ctx.diagnosis_name:
        parts.append(ctx.diagnosis_name)
    if ctx.test_results:
        parts.append(f"{len(ctx.test_results)} test result(s)")
    return " · ".join(parts)


# ─────────────────────────────────────────────
# Turn persistence
# ─────────────────────────────────────────────

def new_chat_id() -> str:
    return uuid.uuid4().hex


def persist_turn(store: ChatStore, chat_id: str, turn: TurnRequest,
                 response: TurnResponse, ctx: ConversationContext) -> bool:
    """
    Record one turn. The assistant message carries the stage and the
    resumable context projection as metadata. Returns False (and logs) when
    the store fails.
    """
    try:
        projection = None
        if response.stage.value == "ERROR":
            store.upsert_chat(chat_id)
        else:
            details = ctx.current_details
            projection = summary_projection(ctx)
            store.upsert_chat(
                chat_id,
                title          = chat_title(ctx),
                summary        = chat_summary(ctx),
                bodyPart       = details.body_part,
                symptoms       = list(details.symptoms),
                status         = "resolved" if ctx.confirmed_diagnosis else "active",
                contextSummary = projection,
            )
        if turn.message.strip():
            store.append_message(chat_id, "user", turn.message,
                                 metadata={"actionFlags": turn.action_flags.model_dump(by_alias=True, exclude_none=True, mode="json")})
        if response.response:
            metadata = {"stage": response.stage.value, "nextAction": response.next_action}
            if projection is not None:
                metadata["contextSummary"] = projection
            store.append_message(chat_id, "assistant", response.response, metadata=metadata)
        return True
    except Exception as e:
        err = e if isinstance(e, PersistenceFailure) else PersistenceFailure(str(e))
        logger.warning(f"Chat history not saved for {chat_id}: {err}")
        return False


# ─────────────────────────────────────────────
# Past injuries
# ─────────────────────────────────────────────

def _related(stored: str, current: str) -> bool:
    if stored == current:
        return True
    for current_key, stored_keys in RELATED_BODY_PARTS.items():
        if current_key in current and any(k in stored for k in stored_keys):
            return True
    return False


def relevant_past_injuries(store: ChatStore, body_part: Optional[str],
                           exclude_chat_id: Optional[str] = None) -> List[Dict]:
    """Up to three most recent earlier chats about the same or a related body part."""
    if is_sentinel(body_part):
        return []
    current = body_part.strip().lower()
    found = []
    for chat in store.list_chats():
        if chat["id"] == exclude_chat_id:
            continue
        stored = (chat.get("bodyPart") or "").strip().lower()
        if stored and _related(stored, current):
            found.append({
                "date":     chat.get("lastActivity", "")[:10],
                "bodyPart": chat.get("bodyPart"),
                "symptoms": chat.get("symptoms") or [],
                "title":    chat.get("title"),
            })
        if len(found) == MAX_PAST_INJURIES:
            break
    return found


def format_past_injuries(injuries: List[Dict]) -> str:
    return "\n".join(
        f"{i}. {p['date']} - {p['bodyPart']}: {', '.join(p['symptoms']) or p.get('title') or 'no details'}"
        for i, p in enumerate(injuries, 1)
    )


def past_injury_lookup(store: ChatStore):
    """Adapter for StageRouter(past_injuries=...)."""
    def lookup(body_part: Optional[str], chat_id: Optional[str] = None) -> str:
        return format_past_injuries(relevant_past_injuries(store, body_part, exclude_chat_id=chat_id))
    return lookup
