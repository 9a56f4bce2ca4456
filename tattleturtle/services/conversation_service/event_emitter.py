"""Conversation event emitter.

The emitter is the only writer of conversation_id and utterance_id for a
session, so events reach the evaluator with strictly increasing ids and
no two producers can race on the counter.
"""
import logging
import secrets
import string
import time
import uuid
from typing import Optional

from tattleturtle.shared.models import ConversationEvent, ConversationEventType, EventRole
from tattleturtle.shared.utils import hash_pii

logger = logging.getLogger(__name__)


_STUDENT_ID_ALPHABET = string.ascii_lowercase + string.digits
STUDENT_ID_LENGTH = 8


def new_student_id() -> str:
    """Generate a pseudonymous student id: "student-" + 8 base36 chars."""
    suffix = "".join(secrets.choice(_STUDENT_ID_ALPHABET) for _ in range(STUDENT_ID_LENGTH))
    return f"student-{suffix}"


def new_conversation_id(student_id: str) -> str:
    """Conversation id of the form <student_id>-<epoch ms>-<random>."""
    return f"{student_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


class ConversationEventEmitter:
    """Builds the ConversationEvents for one student's sessions.

    Every method returns a new event and advances the utterance counter.
    start_session() begins a fresh conversation id with the counter at 0.
    """

    def __init__(self, student_id: str):
        if not student_id:
            raise ValueError("student_id is required")
        self.student_id = student_id
        self._conversation_id = new_conversation_id(student_id)
        self._utterance_id = 0

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def utterance_id(self) -> int:
        """Id that the most recent event carried."""
        return self._utterance_id

    def start_session(self) -> ConversationEvent:
        self._conversation_id = new_conversation_id(self.student_id)
        self._utterance_id = 0
        logger.info(
            "CONVERSATION_SESSION_STARTED",
            extra={
                "student_id_hash": hash_pii(self.student_id),
                "conversation_id_hash": hash_pii(self._conversation_id),
            }
        )
        return self._build(ConversationEventType.SESSION_START, EventRole.SYSTEM)

    def student_utterance(self, text: str) -> ConversationEvent:
        return self._next(ConversationEventType.STUDENT_UTTERANCE, EventRole.STUDENT, text)

    def model_utterance(self, text: str) -> ConversationEvent:
        return self._next(ConversationEventType.MODEL_UTTERANCE, EventRole.MODEL, text)

    def manual_teacher_request(self, text: Optional[str] = None) -> ConversationEvent:
        return self._next(ConversationEventType.MANUAL_TEACHER_REQUEST, EventRole.STUDENT, text)

    def end_session(self) -> ConversationEvent:
        return self._next(ConversationEventType.SESSION_END, EventRole.SYSTEM)

    def _next(
        self,
        event_type: ConversationEventType,
        role: EventRole,
        text: Optional[str] = None,
    ) -> ConversationEvent:
        self._utterance_id += 1
        return self._build(event_type, role, text)

    def _build(
        self,
        event_type: ConversationEventType,
        role: EventRole,
        text: Optional[str] = None,
    ) -> ConversationEvent:
        return ConversationEvent(
            type=event_type,
            role=role,
            student_id=self.student_id,
            conversation_id=self._conversation_id,
            utterance_id=self._utterance_id,
            text=text,
        )
