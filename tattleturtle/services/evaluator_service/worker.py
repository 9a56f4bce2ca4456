"""Isolated execution context for the conversation evaluator.

The worker owns one ConversationEvaluator (and with it the transcript
store) and runs it on a private asyncio loop in a daemon thread, so a
slow or hung model call never blocks the host loop. Requests go in
through a FIFO inbox; decisions, errors and heartbeats come back through
the on_message callback, which is invoked on the worker thread.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from tattleturtle.shared.models import ConversationEvent
from tattleturtle.shared.utils import hash_pii
from .evaluator import ConversationEvaluator
from .policy import EvaluatorPolicy, load_policy

logger = logging.getLogger(__name__)


EVALUATION_FAILURE = "EVALUATION_FAILURE"


class WorkerMessageKind(Enum):
    EVALUATE = "EVALUATE"
    DECISION = "DECISION"
    WORKER_ERROR = "WORKER_ERROR"
    HEARTBEAT = "HEARTBEAT"


@dataclass(frozen=True)
class WorkerError:
    """Payload of a WORKER_ERROR message."""
    code: str
    details: str


@dataclass(frozen=True)
class WorkerMessage:
    """Envelope for everything crossing the worker boundary.

    Payload is a ConversationEvent for EVALUATE, a SafetyDecision for
    DECISION, a WorkerError for WORKER_ERROR and {"timestamp": ms} for
    HEARTBEAT. request_id correlates a DECISION or WORKER_ERROR with the
    EVALUATE that caused it.
    """
    kind: WorkerMessageKind
    payload: Any
    request_id: Optional[str] = None


MessageCallback = Callable[[WorkerMessage], None]
CrashCallback = Callable[[BaseException], None]


class EvaluatorWorker:
    """One evaluator on its own thread and event loop."""

    def __init__(
        self,
        on_message: MessageCallback,
        on_crash: CrashCallback,
        policy: Optional[EvaluatorPolicy] = None,
        evaluator: Optional[ConversationEvaluator] = None,
    ):
        """Construct the worker and its evaluator.

        Raises:
            ValueError: If the evaluator cannot be built (e.g. no API key)
        """
        self.policy = policy or load_policy()
        self.evaluator = evaluator or ConversationEvaluator.from_policy(self.policy)
        self._on_message = on_message
        self._on_crash = on_crash
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inbox: Optional[asyncio.Queue] = None
        self._main_task: Optional[asyncio.Task] = None
        self._thread: Optional[threading.Thread] = None
        self._terminated = False

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._terminated

    def start(self) -> None:
        """Create the private loop and start the worker thread."""
        if self._thread is not None:
            raise RuntimeError("Evaluator worker already started")

        self._loop = asyncio.new_event_loop()
        self._inbox = asyncio.Queue()
        self._main_task = self._loop.create_task(self._main())
        self._thread = threading.Thread(
            target=self._run,
            name="evaluator-worker",
            daemon=True,
        )
        self._thread.start()
        logger.info("EVALUATOR_WORKER_STARTED", extra={"thread": self._thread.name})

    def post(self, message: WorkerMessage) -> None:
        """Queue a message for the worker; ignored after termination."""
        if self._terminated or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._inbox.put_nowait, message)
        except RuntimeError:
            # Loop already closed
            pass

    def terminate(self) -> None:
        """Abandon in-flight work and stop the loop. Idempotent."""
        if self._terminated:
            return
        self._terminated = True
        if self._loop is None or self._main_task is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._main_task.cancel)
        except RuntimeError:
            pass
        logger.info("EVALUATOR_WORKER_TERMINATED")

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._main_task)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            if not self._terminated:
                logger.error(
                    "EVALUATOR_WORKER_CRASHED",
                    extra={"error": str(e), "error_type": type(e).__name__}
                )
                self._on_crash(e)
        finally:
            self._loop.close()

    async def _main(self) -> None:
        heartbeat = asyncio.ensure_future(self._heartbeat())
        try:
            while True:
                message = await self._inbox.get()
                await self._handle(message)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            await self.evaluator.aclose()

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.policy.heartbeat_interval_seconds)
            self._send(WorkerMessage(
                kind=WorkerMessageKind.HEARTBEAT,
                payload={"timestamp": int(time.time() * 1000)},
            ))

    async def _handle(self, message: WorkerMessage) -> None:
        if message.kind is not WorkerMessageKind.EVALUATE:
            logger.warning(
                "EVALUATOR_WORKER_UNEXPECTED_MESSAGE",
                extra={"kind": message.kind.value}
            )
            return

        event: ConversationEvent = message.payload
        try:
            decision = await self.evaluator.evaluate_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "EVALUATOR_WORKER_EVALUATION_FAILED",
                extra={
                    "request_id": message.request_id,
                    "conversation_id_hash": hash_pii(event.conversation_id),
                    "utterance_id": event.utterance_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            self._send(WorkerMessage(
                kind=WorkerMessageKind.WORKER_ERROR,
                payload=WorkerError(code=EVALUATION_FAILURE, details=str(e)),
                request_id=message.request_id,
            ))
            return

        self._send(WorkerMessage(
            kind=WorkerMessageKind.DECISION,
            payload=decision,
            request_id=message.request_id,
        ))

    def _send(self, message: WorkerMessage) -> None:
        if self._terminated:
            return
        self._on_message(message)
