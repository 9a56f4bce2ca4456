"""Conversation Service: the caller side of safety evaluation.

Components:
- event_emitter.py: ConversationEventEmitter, sole writer of conversation/utterance ids
- alert_publisher.py: TeacherAlertPublisher (Kinesis)
- session.py: SafetySession, applies decisions to a live conversation
"""

from .alert_publisher import TeacherAlertEvent, TeacherAlertPublisher
from .event_emitter import ConversationEventEmitter, new_conversation_id, new_student_id
from .session import SafetySession, SessionStatus

__all__ = [
    "TeacherAlertEvent",
    "TeacherAlertPublisher",
    "ConversationEventEmitter",
    "new_conversation_id",
    "new_student_id",
    "SafetySession",
    "SessionStatus",
]
