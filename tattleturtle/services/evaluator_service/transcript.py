"""Per-conversation transcript state with a rolling character budget.

The store lives inside the evaluator worker and is only touched from the
worker's own event loop, so it needs no locking.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence

from tattleturtle.shared.models import (
    ConversationEvent,
    EventRole,
    TranscriptTurn,
    TurnRole,
)
from tattleturtle.shared.utils import hash_pii

logger = logging.getLogger(__name__)


def compact_transcript(turns: Sequence[TranscriptTurn], limit: int) -> List[TranscriptTurn]:
    """Trim a transcript to a character budget, oldest turns first.

    If a single remaining turn is still over budget, only its trailing
    `limit` characters are kept, so the most recent words survive.

    Args:
        turns: Ordered turns, oldest first
        limit: Character budget over all turn texts; <= 0 disables compaction

    Returns:
        Compacted list of turns
    """
    if limit <= 0:
        return list(turns)

    total = sum(len(turn.text) for turn in turns)
    if total <= limit:
        return list(turns)

    trimmed = list(turns)
    while len(trimmed) > 1 and total > limit:
        removed = trimmed.pop(0)
        total -= len(removed.text)

    if len(trimmed) == 1 and len(trimmed[0].text) > limit:
        trimmed[0] = replace(trimmed[0], text=trimmed[0].text[-limit:])

    return trimmed


def render_transcript(turns: Sequence[TranscriptTurn]) -> str:
    """Render turns as "Role: text" lines."""
    return "\n".join(turn.render() for turn in turns)


def turn_role_for(event: ConversationEvent) -> TurnRole:
    """Map an event's provenance to its transcript speaker label."""
    if event.role is EventRole.STUDENT:
        return TurnRole.STUDENT
    if event.role is EventRole.MODEL:
        return TurnRole.TURTLE
    return TurnRole.SYSTEM


@dataclass
class WorkerState:
    """Mutable evaluator state for one conversation."""
    student_id: str
    transcript: List[TranscriptTurn] = field(default_factory=list)

    def student_text(self) -> str:
        """All student turns in the window, newline-joined."""
        return "\n".join(
            turn.text for turn in self.transcript if turn.role is TurnRole.STUDENT
        )

    def rendered(self) -> str:
        return render_transcript(self.transcript)


class TranscriptStore:
    """Conversation-id keyed WorkerState map with create-on-first-event.

    Entries are never evicted; the store lives as long as its worker.
    """

    def __init__(self, rolling_window_limit: int):
        self.rolling_window_limit = rolling_window_limit
        self._states: Dict[str, WorkerState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._states

    def get(self, conversation_id: str) -> Optional[WorkerState]:
        return self._states.get(conversation_id)

    def get_or_create(self, conversation_id: str, student_id: str) -> WorkerState:
        """Return the state for a conversation, creating it if needed."""
        state = self._states.get(conversation_id)
        if state is None:
            state = WorkerState(student_id=student_id)
            self._states[conversation_id] = state
            logger.info(
                "TRANSCRIPT_STATE_CREATED",
                extra={
                    "conversation_id_hash": hash_pii(conversation_id),
                    "student_id_hash": hash_pii(student_id),
                    "active_conversations": len(self._states),
                }
            )
        return state

    def append(self, conversation_id: str, student_id: str, turn: TranscriptTurn) -> WorkerState:
        """Append a turn and re-apply the rolling window.

        Args:
            conversation_id: Conversation the turn belongs to
            student_id: Owner, used only when the state is created
            turn: Turn to append

        Returns:
            The updated WorkerState
        """
        state = self.get_or_create(conversation_id, student_id)
        state.transcript.append(turn)
        state.transcript = compact_transcript(state.transcript, self.rolling_window_limit)
        return state
