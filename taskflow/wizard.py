"""
Conversational Wizard Machinery

Shared pieces of the creation and completion flows:

- Action: a tagged user interaction (text, selection, skip, back, cancel,
  confirm, edit, meridiem choice) carrying its interaction identifier
- StepResult: what the transport should render after an interaction
- WizardState: ephemeral per-conversation state (fields + step cursor +
  back-navigation history), never persisted
- WizardRegistry: wizard states keyed by conversation id, with eviction on
  commit, cancel and idle timeout, plus the bounded per-conversation set of
  already-processed interaction ids
- BaseFlow: dispatch through a (step x action tag) transition table

Back returns exactly one step, keeping every field collected so far. Back or
cancel at the first step leaves the flow and discards its state.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, Deque, Set, Callable, Awaitable

from .directory import ActorContext
from .notifications import ButtonRow

logger = logging.getLogger("wizard")


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------
class ActionTag(str, Enum):
    """Kinds of user interaction a wizard step can receive."""
    TEXT = "text"
    SELECT = "select"
    SKIP = "skip"
    BACK = "back"
    CANCEL = "cancel"
    CONFIRM = "confirm"
    EDIT = "edit"
    MERIDIEM = "meridiem"


@dataclass(frozen=True)
class Action:
    """One user interaction. value holds the text, selection token, edit target or meridiem."""
    tag: ActionTag
    value: Optional[str] = None
    interaction_id: Optional[str] = None

    @classmethod
    def text(cls, text: str, interaction_id: Optional[str] = None) -> "Action":
        return cls(ActionTag.TEXT, text, interaction_id)

    @classmethod
    def select(cls, value: Any, interaction_id: Optional[str] = None) -> "Action":
        return cls(ActionTag.SELECT, str(value), interaction_id)

    @classmethod
    def skip(cls, interaction_id: Optional[str] = None) -> "Action":
        return cls(ActionTag.SKIP, None, interaction_id)

    @classmethod
    def back(cls, interaction_id: Optional[str] = None) -> "Action":
        return cls(ActionTag.BACK, None, interaction_id)

    @classmethod
    def cancel(cls, interaction_id: Optional[str] = None) -> "Action":
        return cls(ActionTag.CANCEL, None, interaction_id)

    @classmethod
    def confirm(cls, interaction_id: Optional[str] = None) -> "Action":
        return cls(ActionTag.CONFIRM, None, interaction_id)

    @classmethod
    def edit(cls, target: str, interaction_id: Optional[str] = None) -> "Action":
        return cls(ActionTag.EDIT, target, interaction_id)

    @classmethod
    def meridiem(cls, value: str, interaction_id: Optional[str] = None) -> "Action":
        return cls(ActionTag.MERIDIEM, value.lower(), interaction_id)


# -----------------------------------------------------------------------------
# Callback data codec
# -----------------------------------------------------------------------------
CALLBACK_PREFIXES: Dict[ActionTag, str] = {
    ActionTag.SELECT: "sel",
    ActionTag.SKIP: "skip",
    ActionTag.BACK: "back",
    ActionTag.CANCEL: "cancel",
    ActionTag.CONFIRM: "ok",
    ActionTag.EDIT: "edit",
    ActionTag.MERIDIEM: "ampm",
}
PREFIX_TAGS: Dict[str, ActionTag] = {prefix: tag for tag, prefix in CALLBACK_PREFIXES.items()}


def callback_data(tag: ActionTag, value: Any = None) -> str:
    """Inline-button payload for a wizard action, e.g. "sel:12" or "ok"."""
    prefix = CALLBACK_PREFIXES[tag]
    return prefix if value is None else f"{prefix}:{value}"


def parse_callback(data: str, interaction_id: Optional[str] = None) -> Optional[Action]:
    """Inverse of callback_data. None for payloads that are not wizard actions."""
    prefix, _, value = (data or "").partition(":")
    tag = PREFIX_TAGS.get(prefix)
    if tag is None:
        return None
    return Action(tag, value or None, interaction_id)


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------
@dataclass
class StepResult:
    """What to show the user after an interaction."""
    text: str
    buttons: List[ButtonRow] = field(default_factory=list)
    step: Optional[str] = None
    finished: bool = False
    task_id: Optional[int] = None
    duplicate: bool = False

    @classmethod
    def done(cls, text: str, task_id: Optional[int] = None) -> "StepResult":
        return cls(text=text, finished=True, task_id=task_id)

    @classmethod
    def ignored(cls) -> "StepResult":
        return cls(text="", duplicate=True)


# -----------------------------------------------------------------------------
# State
# -----------------------------------------------------------------------------
class FlowKind(str, Enum):
    CREATION = "creation"
    COMPLETION = "completion"


@dataclass
class WizardState:
    """In-memory state of one in-progress flow."""
    conversation_id: int
    telegram_id: int
    kind: FlowKind
    step: str
    history: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=datetime.now)

    def advance(self, next_step: str) -> None:
        """Move forward, remembering where we came from."""
        self.history.append(self.step)
        self.step = next_step

    def go_back(self) -> Optional[str]:
        """Step back once. Returns the new step, or None at the first step."""
        if not self.history:
            return None
        self.step = self.history.pop()
        return self.step

    def jump(self, step: str) -> None:
        """Move without recording history (used to return to confirmation)."""
        self.step = step


class WizardRegistry:
    """
    Wizard states keyed by conversation id.

    States are discarded on commit and cancel, and evicted after
    idle_timeout without interaction.
    """

    def __init__(self, idle_timeout: timedelta = timedelta(minutes=30), processed_limit: int = 50):
        self.idle_timeout = idle_timeout
        self.processed_limit = processed_limit
        self._states: Dict[int, WizardState] = {}
        self._processed: Dict[int, Tuple[Deque[str], Set[str]]] = {}
        self._last_seen: Dict[int, datetime] = {}

    def start(self, conversation_id: int, telegram_id: int, kind: FlowKind, step: str, now: datetime) -> WizardState:
        if conversation_id in self._states:
            logger.info(f"Conversation {conversation_id}: replacing active {self._states[conversation_id].kind.value} flow")
        state = WizardState(
            conversation_id=conversation_id,
            telegram_id=telegram_id,
            kind=kind,
            step=step,
            updated_at=now,
        )
        self._states[conversation_id] = state
        self._last_seen[conversation_id] = now
        return state

    def get(self, conversation_id: int, now: datetime) -> Optional[WizardState]:
        state = self._states.get(conversation_id)
        if state is None:
            return None
        if now - state.updated_at > self.idle_timeout:
            logger.info(f"Conversation {conversation_id}: {state.kind.value} flow abandoned, evicting")
            self.discard(conversation_id)
            return None
        return state

    def touch(self, state: WizardState, now: datetime) -> None:
        state.updated_at = now
        self._last_seen[state.conversation_id] = now

    def discard(self, conversation_id: int) -> None:
        self._states.pop(conversation_id, None)

    def restore(self, state: WizardState) -> None:
        """Put back a state discarded at commit whose store write then failed."""
        if state.conversation_id not in self._states:
            self._states[state.conversation_id] = state

    def evict_idle(self, now: datetime) -> int:
        """Drop abandoned flows and stale duplicate-guard memory. Returns flows evicted."""
        stale = [cid for cid, s in self._states.items() if now - s.updated_at > self.idle_timeout]
        for cid in stale:
            self.discard(cid)
        for cid in [cid for cid, seen in self._last_seen.items() if now - seen > self.idle_timeout]:
            if cid not in self._states:
                self._processed.pop(cid, None)
                self._last_seen.pop(cid, None)
        if stale:
            logger.info(f"Evicted {len(stale)} abandoned flow(s)")
        return len(stale)

    def active_count(self) -> int:
        return len(self._states)

    # -------------------------------------------------------------------------
    # Duplicate interaction guard
    # -------------------------------------------------------------------------

    def seen_before(self, conversation_id: int, interaction_id: Optional[str], now: datetime) -> bool:
        """
        Record an interaction id; True if it was already processed.

        Interactions without an id are never treated as duplicates.
        """
        if not interaction_id:
            return False
        order, seen = self._processed.setdefault(conversation_id, (deque(), set()))
        self._last_seen[conversation_id] = now
        if interaction_id in seen:
            return True
        order.append(interaction_id)
        seen.add(interaction_id)
        while len(order) > self.processed_limit:
            seen.discard(order.popleft())
        return False

    def forget(self, conversation_id: int, interaction_id: Optional[str]) -> None:
        """Un-record an interaction whose processing failed, so a retry is handled."""
        if not interaction_id or conversation_id not in self._processed:
            return
        order, seen = self._processed[conversation_id]
        if interaction_id in seen:
            seen.discard(interaction_id)
            order.remove(interaction_id)


# -----------------------------------------------------------------------------
# Flow base
# -----------------------------------------------------------------------------
Handler = Callable[[WizardState, Action, ActorContext], Awaitable[StepResult]]


class BaseFlow:
    """
    Dispatch for one flow kind.

    Subclasses define TRANSITIONS: {step: {action tag: handler method name}}
    and render() for re-displaying the current step. BACK and CANCEL are
    handled here for every step.
    """

    kind: FlowKind
    first_step: str
    TRANSITIONS: Dict[str, Dict[ActionTag, str]] = {}

    def __init__(self, registry: WizardRegistry, clock: Callable[[], datetime]):
        self.registry = registry
        self.clock = clock

    async def dispatch(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        if action.tag == ActionTag.CANCEL:
            return self.cancel(state)
        if action.tag == ActionTag.BACK:
            return await self.back(state, actor)

        handler_name = self.TRANSITIONS.get(state.step, {}).get(action.tag)
        if handler_name is None:
            logger.debug(f"{self.kind.value}: {action.tag.value} not accepted at {state.step}")
            return await self.render(state, actor, notice="Please use the options below.")

        handler: Handler = getattr(self, handler_name)
        return await handler(state, action, actor)

    def cancel(self, state: WizardState) -> StepResult:
        self.registry.discard(state.conversation_id)
        logger.info(f"Conversation {state.conversation_id}: {self.kind.value} flow cancelled at {state.step}")
        return StepResult.done("❌ Cancelled. Nothing was saved.")

    async def back(self, state: WizardState, actor: ActorContext) -> StepResult:
        if state.go_back() is None:
            return self.cancel(state)
        self.on_back(state)
        return await self.render(state, actor)

    def on_back(self, state: WizardState) -> None:
        """Hook for clearing sub-step markers when stepping back."""

    async def render(self, state: WizardState, actor: ActorContext, notice: Optional[str] = None) -> StepResult:
        raise NotImplementedError

    def finish(self, state: WizardState, text: str, task_id: Optional[int] = None) -> StepResult:
        self.registry.discard(state.conversation_id)
        return StepResult.done(text, task_id=task_id)


NAV_ROW: ButtonRow = [
    ("⬅️ Back", callback_data(ActionTag.BACK)),
    ("❌ Cancel", callback_data(ActionTag.CANCEL)),
]


def with_notice(notice: Optional[str], text: str) -> str:
    return f"{notice}\n\n{text}" if notice else text


def step_name(step: Any) -> str:
    return getattr(step, "value", step)
