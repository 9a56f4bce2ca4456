"""Caller-side safety session.

Wires one conversation's emitter to a fresh EvaluatorClient and applies
the decisions that come back: escalations stop the session and alert the
teacher once, end-of-conversation decisions close it, and decisions for
any other conversation are ignored. The conversation itself never waits
on the evaluator; if it cannot start, the session runs with
evaluator_offline set so the UI can say so.
"""
import logging
from enum import Enum
from typing import Callable, Optional

from tattleturtle.shared.models import SafetyDecision
from tattleturtle.shared.utils import hash_pii
from tattleturtle.services.evaluator_service import EvaluatorClient, EvaluatorPolicy
from .alert_publisher import TeacherAlertPublisher
from .event_emitter import ConversationEventEmitter, new_student_id

logger = logging.getLogger(__name__)


class SessionStatus(Enum):
    IDLE = "IDLE"
    ACTIVE = "ACTIVE"
    TEACHER_REQUIRED = "TEACHER_REQUIRED"
    ENDED = "ENDED"


class SafetySession:
    """One student conversation under safety evaluation.

    Must be driven from the asyncio loop the evaluator client runs on.
    """

    def __init__(
        self,
        student_id: Optional[str] = None,
        policy: Optional[EvaluatorPolicy] = None,
        publisher: Optional[TeacherAlertPublisher] = None,
        client_factory: Callable[..., EvaluatorClient] = EvaluatorClient,
        on_teacher_required: Optional[Callable[[SafetyDecision], None]] = None,
        on_end: Optional[Callable[[], None]] = None,
    ):
        self.student_id = student_id or new_student_id()
        self.emitter = ConversationEventEmitter(self.student_id)
        self.policy = policy
        self.publisher = publisher or TeacherAlertPublisher()
        self.status = SessionStatus.IDLE
        self.evaluator_offline = False
        self.teacher_required = False
        self.latest_decision: Optional[SafetyDecision] = None
        self.student_notice: Optional[str] = None
        self.failure_reason: Optional[str] = None
        self._client_factory = client_factory
        self._on_teacher_required = on_teacher_required
        self._on_end = on_end
        self._client: Optional[EvaluatorClient] = None

    @property
    def conversation_id(self) -> str:
        return self.emitter.conversation_id

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE

    def start(self) -> bool:
        """Begin a new conversation.

        Returns:
            True if safety evaluation is running, False if the session
            continues with the evaluator offline
        """
        if self._client is not None:
            self._client.terminate()

        start_event = self.emitter.start_session()
        self.status = SessionStatus.ACTIVE
        self.teacher_required = False
        self.latest_decision = None
        self.student_notice = None
        self.failure_reason = None

        self._client = self._client_factory(
            on_decision=self.apply_decision,
            on_failure=self._on_evaluator_failure,
            policy=self.policy,
        )
        ready = self._client.init()
        self.evaluator_offline = not ready
        if ready:
            self._client.emit(start_event)
        else:
            logger.warning(
                "SAFETY_EVALUATOR_OFFLINE",
                extra={"conversation_id_hash": hash_pii(self.conversation_id)}
            )
        return ready

    def student_said(self, text: str) -> None:
        self._emit_if_active(self.emitter.student_utterance, text)

    def turtle_said(self, text: str) -> None:
        self._emit_if_active(self.emitter.model_utterance, text)

    def request_teacher(self, text: Optional[str] = None) -> None:
        self._emit_if_active(self.emitter.manual_teacher_request, text)

    def end(self) -> None:
        """Emit SESSION_END and release the evaluator. Idempotent.

        Student turns the evaluator has not decided yet are re-checked by
        the detector on the way out, so ending the session cannot swallow
        a critical statement.
        """
        if not self.is_active:
            return
        self.status = SessionStatus.ENDED
        client, self._client = self._client, None
        if client is not None:
            client.emit(self.emitter.end_session())
            client.terminate(recheck_pending=True)
        logger.info(
            "SAFETY_SESSION_ENDED",
            extra={"conversation_id_hash": hash_pii(self.conversation_id)}
        )
        if self._on_end is not None:
            self._on_end()

    def apply_decision(self, decision: SafetyDecision) -> None:
        """Apply one decision from the evaluator client."""
        if decision.conversation_id != self.conversation_id:
            logger.debug(
                "SAFETY_DECISION_IGNORED",
                extra={"reason": "other_conversation", "reason_code": decision.reason_code}
            )
            return

        self.latest_decision = decision
        if decision.student_notice:
            self.student_notice = decision.student_notice

        if decision.requires_teacher:
            self._escalate(decision)
            return

        if decision.should_end_conversation and self.is_active:
            self.end()

    def _escalate(self, decision: SafetyDecision) -> None:
        if self.teacher_required:
            return
        self.teacher_required = True
        self.status = SessionStatus.TEACHER_REQUIRED
        self._release_client()

        logger.critical(
            "SAFETY_SESSION_TEACHER_REQUIRED",
            extra={
                "conversation_id_hash": hash_pii(decision.conversation_id),
                "student_id_hash": hash_pii(decision.student_id),
                "reason_code": decision.reason_code,
            }
        )
        self.publisher.publish_alert(decision)
        if self._on_teacher_required is not None:
            self._on_teacher_required(decision)

    def _on_evaluator_failure(self, reason: str) -> None:
        self.failure_reason = reason
        logger.warning(
            "SAFETY_EVALUATOR_FALLBACK",
            extra={"conversation_id_hash": hash_pii(self.conversation_id), "reason": reason}
        )

    def _emit_if_active(self, build_event, text: Optional[str]) -> None:
        if not self.is_active or self._client is None:
            return
        self._client.emit(build_event(text))

    def _release_client(self) -> None:
        if self._client is not None:
            self._client.terminate()
            self._client = None
