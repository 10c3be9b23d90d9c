"""
Completion input validation.

Every InputKind is handled explicitly; adding a kind without a rule here
fails at import time.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from quest_engine.models.quest import InputKind, QuestDefinition

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"[ \t]+")

MAX_TEXT_LENGTH = 5000


def sanitize_text(value: str) -> str:
    """Strip HTML tags and surrounding whitespace from user text."""
    cleaned = _TAG_RE.sub("", value)
    cleaned = _WS_RE.sub(" ", cleaned).strip()
    return cleaned[:MAX_TEXT_LENGTH]


def _text(quest: QuestDefinition, raw: Any) -> Tuple[bool, Optional[str]]:
    if not isinstance(raw, str):
        return False, None
    cleaned = sanitize_text(raw)
    return bool(cleaned), cleaned or None


def _dropdown(quest: QuestDefinition, raw: Any) -> Tuple[bool, Optional[str]]:
    ok, cleaned = _text(quest, raw)
    if not ok:
        return False, None
    if quest.options and cleaned not in quest.options:
        return False, None
    return True, cleaned


def _structured(quest: QuestDefinition, raw: Any) -> Tuple[bool, Optional[Dict[str, Any]]]:
    if not isinstance(raw, Mapping):
        return False, None
    return True, dict(raw)


def _no_input(quest: QuestDefinition, raw: Any) -> Tuple[bool, None]:
    return True, None


_VALIDATORS: Dict[InputKind, Callable[[QuestDefinition, Any], Tuple[bool, Any]]] = {
    InputKind.TEXT: _text,
    InputKind.DROPDOWN: _dropdown,
    InputKind.CHECKBOX: _no_input,
    InputKind.FLOW: _no_input,
    InputKind.CONVERSATION_LOG: _structured,
    InputKind.MILESTONE: _structured,
    InputKind.FLOW_COMPASS: _structured,
    InputKind.GROAN: _structured,
}

_unhandled = set(InputKind) - set(_VALIDATORS)
if _unhandled:
    raise RuntimeError(f"No input validator for: {sorted(k.value for k in _unhandled)}")


def validate_input(quest: QuestDefinition, raw_input: Any) -> Tuple[bool, Any]:
    """
    Check `raw_input` against the quest's input kind.

    Returns:
        (ok, normalized) where normalized is sanitized text, a dict for
        structured kinds, or None for checkbox/flow. Checkbox quests with a
        milestone_type still pass through any mapping given.
    """
    ok, normalized = _VALIDATORS[quest.input_kind](quest, raw_input)
    if ok and normalized is None and quest.is_milestone and isinstance(raw_input, Mapping):
        normalized = dict(raw_input)
    return ok, normalized
