"""Approval workflow states, intents, event types and the legal edge table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Sequence, Tuple


STATE_DRAFT = "DRAFT"
STATE_EDITOR_REVIEW = "EDITOR_REVIEW"
STATE_MANAGER_REVIEW = "MANAGER_REVIEW"
STATE_APPROVED = "APPROVED"
STATE_REJECTED = "REJECTED"

APPROVAL_STATES: Tuple[str, ...] = (
    STATE_DRAFT,
    STATE_EDITOR_REVIEW,
    STATE_MANAGER_REVIEW,
    STATE_APPROVED,
    STATE_REJECTED,
)
IN_REVIEW_STATES = frozenset({STATE_EDITOR_REVIEW, STATE_MANAGER_REVIEW})

INTENT_SUBMIT = "submit"
INTENT_ADVANCE = "advance"
INTENT_REJECT = "reject"
INTENT_REOPEN = "reopen"

TRANSITION_INTENTS: Tuple[str, ...] = (INTENT_SUBMIT, INTENT_ADVANCE, INTENT_REJECT, INTENT_REOPEN)

EVENT_SUBMITTED = "SUBMITTED"
EVENT_MOVED_TO_EDITOR = "MOVED_TO_EDITOR"
EVENT_MOVED_TO_MANAGER = "MOVED_TO_MANAGER"
EVENT_APPROVED = "APPROVED"
EVENT_REJECTED = "REJECTED"
EVENT_COMMENT = "COMMENT"

EVENT_TYPES: Tuple[str, ...] = (
    EVENT_SUBMITTED,
    EVENT_MOVED_TO_EDITOR,
    EVENT_MOVED_TO_MANAGER,
    EVENT_APPROVED,
    EVENT_REJECTED,
    EVENT_COMMENT,
)

CONTENT_STATUS_DRAFT = "DRAFT"
CONTENT_STATUS_READY = "READY"
CONTENT_STATUS_IN_REVIEW = "IN_REVIEW"
CONTENT_STATUS_APPROVED = "APPROVED"

REOPEN_COMMENT = "Reopened after changes."


@dataclass(frozen=True)
class Edge:
    source: str
    intent: str
    target: str
    event_type: str


# The six legal edges. Nothing else may change ``ApprovalRequest.state``.
TRANSITIONS: Tuple[Edge, ...] = (
    Edge(STATE_DRAFT, INTENT_SUBMIT, STATE_EDITOR_REVIEW, EVENT_SUBMITTED),
    Edge(STATE_EDITOR_REVIEW, INTENT_ADVANCE, STATE_MANAGER_REVIEW, EVENT_MOVED_TO_MANAGER),
    Edge(STATE_MANAGER_REVIEW, INTENT_ADVANCE, STATE_APPROVED, EVENT_APPROVED),
    Edge(STATE_EDITOR_REVIEW, INTENT_REJECT, STATE_REJECTED, EVENT_REJECTED),
    Edge(STATE_MANAGER_REVIEW, INTENT_REJECT, STATE_REJECTED, EVENT_REJECTED),
    Edge(STATE_REJECTED, INTENT_REOPEN, STATE_EDITOR_REVIEW, EVENT_MOVED_TO_EDITOR),
)

_EDGES_BY_KEY: Dict[Tuple[str, str], Edge] = {(edge.source, edge.intent): edge for edge in TRANSITIONS}
_EDGES_BY_EVENT: Dict[Tuple[str, str], Edge] = {(edge.source, edge.event_type): edge for edge in TRANSITIONS}

# Human messages for (state, intent) pairs that have no edge.
_INVALID_MESSAGES: Dict[str, str] = {
    INTENT_SUBMIT: "Only draft requests can be submitted.",
    INTENT_ADVANCE: "This request cannot be advanced further.",
    INTENT_REJECT: "Only in-review items can be rejected.",
    INTENT_REOPEN: "Only rejected requests can be reopened.",
}


def find_edge(state: str, intent: str) -> Optional[Edge]:
    return _EDGES_BY_KEY.get((state, intent))


def invalid_transition_message(state: str, intent: str) -> str:
    base = _INVALID_MESSAGES.get(intent, "Unsupported transition.")
    return f"{base} (state={state}, intent={intent})"


def content_status_for(target_state: str) -> Optional[str]:
    """ContentItem.status projection written alongside a transition, if any."""

    if target_state == STATE_APPROVED:
        return CONTENT_STATUS_APPROVED
    if target_state == STATE_REJECTED:
        return CONTENT_STATUS_READY
    if target_state == STATE_EDITOR_REVIEW:
        return CONTENT_STATUS_IN_REVIEW
    return None


@dataclass(frozen=True)
class LogViolation:
    index: int
    state: str
    event_type: str


def replay_event_log(event_types: Iterable[str], *, initial_state: str = STATE_DRAFT) -> Tuple[str, Optional[LogViolation]]:
    """Replay a timeline of event types through the edge table.

    Returns the final state and the first event that is not reachable from the
    state preceding it (``None`` when the whole log is legal). COMMENT events
    never change state.
    """

    state = initial_state
    for index, event_type in enumerate(event_types):
        if event_type == EVENT_COMMENT:
            continue
        edge = _EDGES_BY_EVENT.get((state, event_type))
        if edge is None:
            return state, LogViolation(index=index, state=state, event_type=event_type)
        state = edge.target
    return state, None


def legal_intents(state: str) -> Sequence[str]:
    return [edge.intent for edge in TRANSITIONS if edge.source == state]
