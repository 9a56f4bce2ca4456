"""Evaluator client: the caller's handle on one isolated evaluator worker.

Lives on the caller's asyncio loop. All state transitions happen in
callbacks scheduled on that loop, so the first failure to be handled is
the only one that acts. Messages from the worker thread are marshalled
onto the host loop before they touch client state.

Whatever goes wrong (worker cannot start, evaluation error, crash, no
answer within the response timeout) the caller gets exactly one
fail-safe SafetyDecision, and that decision re-runs the deterministic
detector on the pending text first so a critical statement is never lost.

A critical student utterance never waits behind an outstanding model
call: if one is in flight, the detector decides it on the spot and the
client stops evaluating the conversation.
"""
import asyncio
import logging
import time
import uuid
from collections import deque
from enum import Enum
from typing import Callable, Deque, List, Optional, Tuple

from tattleturtle.shared.models import (
    EVALUATOR_FAILURE_REASON,
    ConversationEvent,
    ConversationEventType,
    CriticalSafetyMatch,
    NO_MATCH,
    SafetyDecision,
    SafetyOutcome,
)
from tattleturtle.shared.utils import hash_pii
from tattleturtle.services.safety_service import CriticalPhraseDetector, get_detector
from .evaluator import STUDENT_ESCALATION_NOTICE, critical_teacher_notice
from .policy import EvaluatorPolicy, load_policy
from .worker import EvaluatorWorker, WorkerError, WorkerMessage, WorkerMessageKind

logger = logging.getLogger(__name__)


EVALUATOR_UNAVAILABLE_NOTICE = "Safety evaluator is temporarily unavailable. Turtle will keep listening."
TIMEOUT_FAILURE = "Evaluator worker timeout. Triggering fail-safe escalation."

DecisionHandler = Callable[[SafetyDecision], None]
FailureHandler = Callable[[str], None]


class ClientState(Enum):
    UNINITIALIZED = "UNINITIALIZED"
    READY = "READY"
    FAILED = "FAILED"            # Terminal, fail-safe already delivered
    ESCALATED = "ESCALATED"      # Terminal, critical match decided without the worker
    TERMINATED = "TERMINATED"    # Terminal, shut down by the caller


class EvaluatorClient:
    """Owns one evaluator worker for one conversation session.

    At most one evaluation is outstanding at a time. Events emitted while
    a request is in flight are queued and dispatched in order as
    decisions come back.
    """

    def __init__(
        self,
        on_decision: DecisionHandler,
        on_failure: Optional[FailureHandler] = None,
        policy: Optional[EvaluatorPolicy] = None,
        worker_factory: Callable[..., EvaluatorWorker] = EvaluatorWorker,
        detector: Optional[CriticalPhraseDetector] = None,
    ):
        self.policy = policy or load_policy()
        self.detector = detector or get_detector()
        self.last_heartbeat_at: Optional[int] = None
        self._on_decision = on_decision
        self._on_failure = on_failure
        self._worker_factory = worker_factory
        self._worker: Optional[EvaluatorWorker] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._state = ClientState.UNINITIALIZED
        self._last_event: Optional[ConversationEvent] = None
        self._in_flight: Optional[Tuple[str, ConversationEvent]] = None
        self._pending: Deque[ConversationEvent] = deque()
        self._delivering = False
        self._timeout_handle: Optional[asyncio.TimerHandle] = None

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ClientState.READY

    @property
    def pending_count(self) -> int:
        """Events emitted but not yet decided (in flight plus queued)."""
        return len(self._pending) + (1 if self._in_flight else 0)

    def init(self) -> bool:
        """Start the worker. Must be called from the host event loop.

        Returns:
            True if the client is ready for events; False if the worker
            could not start, in which case the fail-safe decision has
            already been delivered and the caller should show that safety
            evaluation is offline.
        """
        if self._state is not ClientState.UNINITIALIZED:
            logger.warning(
                "EVALUATOR_CLIENT_ALREADY_INITIALIZED",
                extra={"state": self._state.value}
            )
            return self._state is ClientState.READY

        try:
            self._loop = asyncio.get_running_loop()
            self._worker = self._worker_factory(
                on_message=self._on_worker_message,
                on_crash=self._on_worker_crash,
                policy=self.policy,
            )
            self._worker.start()
        except Exception as e:
            self._handle_failure(f"Evaluator worker failed to initialize: {e}")
            return False

        self._state = ClientState.READY
        logger.info("EVALUATOR_CLIENT_READY", extra={"model": self.policy.model})
        return True

    def emit(self, event: ConversationEvent) -> None:
        """Submit an event for evaluation. No-op unless READY."""
        if self._state is not ClientState.READY:
            return

        self._last_event = event
        if self._in_flight is not None or self._delivering:
            if self._escalate_critical([event]):
                return
            self._pending.append(event)
            logger.debug(
                "EVALUATOR_CLIENT_EVENT_QUEUED",
                extra={"utterance_id": event.utterance_id, "queued": len(self._pending)}
            )
            return
        self._dispatch(event)

    def terminate(self, recheck_pending: bool = False) -> None:
        """Cancel the timeout and tear down the worker. Idempotent.

        Args:
            recheck_pending: Run the detector over undecided student
                utterances first and deliver a TEACHER_REQUIRED decision
                for the first critical one, instead of dropping them
        """
        if recheck_pending and self._state is ClientState.READY:
            undecided = [self._in_flight[1]] if self._in_flight else []
            if self._escalate_critical([*undecided, *self._pending]):
                return
        self._release()
        if self._state in (ClientState.UNINITIALIZED, ClientState.READY):
            self._state = ClientState.TERMINATED
            logger.info("EVALUATOR_CLIENT_TERMINATED")

    def _dispatch(self, event: ConversationEvent) -> None:
        request_id = uuid.uuid4().hex
        self._in_flight = (request_id, event)
        self._worker.post(WorkerMessage(
            kind=WorkerMessageKind.EVALUATE,
            payload=event,
            request_id=request_id,
        ))
        self._cancel_timeout()
        self._timeout_handle = self._loop.call_later(
            self.policy.response_timeout_seconds,
            self._on_response_timeout,
            request_id,
        )

    def _on_worker_message(self, message: WorkerMessage) -> None:
        self._call_on_host(self._handle_worker_message, message)

    def _on_worker_crash(self, error: BaseException) -> None:
        self._call_on_host(self._handle_failure, f"Evaluator worker crashed: {error}")

    def _call_on_host(self, callback, *args) -> None:
        if self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Host loop closed; nobody is left to receive the message
            pass

    def _handle_worker_message(self, message: WorkerMessage) -> None:
        if self._state is not ClientState.READY:
            return

        if message.kind is WorkerMessageKind.HEARTBEAT:
            self.last_heartbeat_at = message.payload.get("timestamp")
            return

        if self._in_flight is None or message.request_id != self._in_flight[0]:
            logger.warning(
                "EVALUATOR_CLIENT_STALE_MESSAGE",
                extra={"kind": message.kind.value, "request_id": message.request_id}
            )
            return

        if message.kind is WorkerMessageKind.WORKER_ERROR:
            error: WorkerError = message.payload
            self._handle_failure(f"Evaluator worker error: {error.details or 'unknown error'}")
            return

        if message.kind is WorkerMessageKind.DECISION:
            self._cancel_timeout()
            self._in_flight = None
            # emit() from inside the handler queues behind the waiting events
            self._delivering = True
            try:
                self._deliver(message.payload)
            finally:
                self._delivering = False
            if self._state is ClientState.READY and self._pending:
                self._dispatch(self._pending.popleft())

    def _on_response_timeout(self, request_id: str) -> None:
        self._timeout_handle = None
        if self._in_flight is None or self._in_flight[0] != request_id:
            return
        self._handle_failure(TIMEOUT_FAILURE)

    def _handle_failure(self, reason: str) -> None:
        if self._state not in (ClientState.UNINITIALIZED, ClientState.READY):
            return
        self._state = ClientState.FAILED

        decision = self._build_fail_safe_decision(reason)
        log_extra = {
            "reason": reason,
            "safety_outcome": decision.safety_outcome.value,
            "reason_code": decision.reason_code,
            "conversation_id_hash": hash_pii(decision.conversation_id),
        }
        if decision.requires_teacher:
            logger.critical("EVALUATOR_FAIL_SAFE_DECISION", extra=log_extra)
        else:
            logger.error("EVALUATOR_FAIL_SAFE_DECISION", extra=log_extra)

        self._release()
        self._deliver(decision)
        if self._on_failure is not None:
            try:
                self._on_failure(reason)
            except Exception:
                logger.exception("EVALUATOR_CLIENT_FAILURE_HANDLER_ERROR")

    def _candidate_events(self) -> List[ConversationEvent]:
        """Undecided events, most recently emitted first."""
        candidates: List[ConversationEvent] = []
        for event in (self._last_event, self._in_flight[1] if self._in_flight else None, *self._pending):
            if event is not None and not any(event is seen for seen in candidates):
                candidates.append(event)
        return candidates

    def _build_fail_safe_decision(self, reason: str) -> SafetyDecision:
        candidates = self._candidate_events()
        source = candidates[0] if candidates else None
        match = NO_MATCH
        for event in candidates:
            candidate_match = self.detector.detect(event.text or "")
            if candidate_match.matched and candidate_match.reason_code:
                source, match = event, candidate_match
                break

        if match.matched:
            return self._critical_decision(source, match)

        requires_teacher = self.policy.fail_safe_outcome is SafetyOutcome.TEACHER_REQUIRED
        return SafetyDecision(
            student_id=source.student_id if source else "unknown-student",
            conversation_id=source.conversation_id if source else f"fallback-{int(time.time() * 1000)}",
            utterance_id=source.utterance_id if source else 0,
            safety_outcome=self.policy.fail_safe_outcome,
            teacher_notify_now=requires_teacher,
            should_end_conversation=requires_teacher,
            reason_code=EVALUATOR_FAILURE_REASON,
            confidence=1.0,
            student_notice=STUDENT_ESCALATION_NOTICE if requires_teacher else EVALUATOR_UNAVAILABLE_NOTICE,
            teacher_notice=reason if requires_teacher else None,
        )

    @staticmethod
    def _critical_decision(event: ConversationEvent, match: CriticalSafetyMatch) -> SafetyDecision:
        return SafetyDecision(
            student_id=event.student_id,
            conversation_id=event.conversation_id,
            utterance_id=event.utterance_id,
            safety_outcome=SafetyOutcome.TEACHER_REQUIRED,
            teacher_notify_now=True,
            should_end_conversation=True,
            reason_code=match.reason_code,
            confidence=1.0,
            student_notice=STUDENT_ESCALATION_NOTICE,
            teacher_notice=critical_teacher_notice(match),
        )

    def _escalate_critical(self, events: List[ConversationEvent]) -> bool:
        """Decide the first critical student utterance without the worker.

        Undecided events are abandoned and the worker is torn down; the
        conversation ends with this decision.
        """
        for event in events:
            if event.type is not ConversationEventType.STUDENT_UTTERANCE:
                continue
            match = self.detector.detect(event.text or "")
            if match.matched and match.reason_code:
                break
        else:
            return False

        abandoned = self.pending_count
        self._state = ClientState.ESCALATED
        self._in_flight = None
        self._pending.clear()
        self._release()

        decision = self._critical_decision(event, match)
        logger.critical(
            "EVALUATOR_CLIENT_CRITICAL_BYPASS",
            extra={
                "reason_code": decision.reason_code,
                "conversation_id_hash": hash_pii(decision.conversation_id),
                "utterance_id": decision.utterance_id,
                "abandoned_events": abandoned,
            }
        )
        self._deliver(decision)
        return True

    def _deliver(self, decision: SafetyDecision) -> None:
        try:
            self._on_decision(decision)
        except Exception:
            logger.exception(
                "EVALUATOR_CLIENT_DECISION_HANDLER_ERROR",
                extra={"reason_code": decision.reason_code}
            )

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _release(self) -> None:
        self._cancel_timeout()
        if self._worker is not None:
            self._worker.terminate()
            self._worker = None
