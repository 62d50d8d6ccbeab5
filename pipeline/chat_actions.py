"""Mapping of free-text chat requests onto a closed set of action types."""

from __future__ import annotations

from dataclasses import dataclass
import enum
import logging
from typing import Optional, Protocol

from pipeline.entitlements import EntitlementWindow, UsageSnapshot, chat_budget_exhausted
from pipeline.errors import RequestValidationError

logger = logging.getLogger(__name__)


class ActionType(str, enum.Enum):
    CHANGE_TITLE = "change_title"
    CHANGE_THUMBNAIL = "change_thumbnail"
    CHANGE_TOPIC = "change_topic"
    CHANGE_FORMAT = "change_format"
    CHANGE_CADENCE = "change_cadence"
    PUBLISH_EXPERIMENT = "publish_experiment"


class ChatActionMapper(Protocol):
    """LLM collaborator: returns an action-type value or None for unmapped."""

    def map_request(self, text: str) -> Optional[str]:
        """Classify ``text``."""


@dataclass(frozen=True)
class ActionMapping:
    action: Optional[ActionType]
    mapped: bool
    reason: str


def parse_action_type(value: Optional[str]) -> Optional[ActionType]:
    if value is None:
        return None
    try:
        return ActionType(value.strip().lower())
    except ValueError:
        return None


def map_chat_request(
    mapper: ChatActionMapper,
    text: str,
    *,
    window: EntitlementWindow,
    usage: UsageSnapshot,
) -> ActionMapping:
    """Map one chat request; budget exhaustion and unknown values come back unmapped."""
    if not isinstance(text, str) or not text.strip():
        raise RequestValidationError("Chat request text must be a non-empty string")

    exhausted = chat_budget_exhausted(window, usage)
    if exhausted is not None:
        logger.info("Chat request left unmapped: budget exhausted (%s)", exhausted)
        return ActionMapping(action=None, mapped=False, reason="budget_exhausted")

    raw = mapper.map_request(text.strip())
    action = parse_action_type(raw)
    if action is None:
        if raw is not None:
            logger.warning("Collaborator returned unknown action type %r", raw)
        return ActionMapping(action=None, mapped=False, reason="unmapped")
    return ActionMapping(action=action, mapped=True, reason="mapped")
