"""End-to-end tests: EvaluatorClient driving a real EvaluatorWorker thread.

Only the model is faked. Decisions, heartbeats and crashes cross from the
worker thread to the test's event loop exactly as they do in production.
"""
import asyncio
import time

import pytest
from unittest.mock import MagicMock

from tattleturtle.shared.models import (
    NO_MATCH,
    SELF_HARM_REASON,
    ConversationEventType,
    SafetyOutcome,
)
from tattleturtle.services.safety_service import CriticalPhraseDetector
from tattleturtle.services.evaluator_service.client import TIMEOUT_FAILURE, ClientState, EvaluatorClient
from tattleturtle.services.evaluator_service.evaluator import ConversationEvaluator
from tattleturtle.services.evaluator_service.policy import EvaluatorPolicy
from tattleturtle.services.evaluator_service.worker import EvaluatorWorker


async def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def slow_llm_factory(fake_llm_factory):
    class SlowLLM(fake_llm_factory):
        def __init__(self, delay, **kwargs):
            super().__init__(**kwargs)
            self.delay = delay

        async def generate_json(self, prompt, schema, schema_name="structured_output"):
            response = await super().generate_json(prompt, schema, schema_name)
            await asyncio.sleep(self.delay)
            return response

    return SlowLLM


@pytest.fixture
def decisions():
    return []


@pytest.fixture
def failures():
    return []


@pytest.fixture
def make_pipeline(decisions, failures):
    clients = []

    def _make(llm, response_timeout_ms=2000, evaluator_detector=None):
        policy = EvaluatorPolicy(response_timeout_ms=response_timeout_ms, heartbeat_interval_ms=20)

        def worker_factory(on_message, on_crash, policy):
            evaluator = ConversationEvaluator(llm=llm, policy=policy, detector=evaluator_detector)
            return EvaluatorWorker(on_message=on_message, on_crash=on_crash, policy=policy, evaluator=evaluator)

        client = EvaluatorClient(
            on_decision=decisions.append,
            on_failure=failures.append,
            policy=policy,
            worker_factory=worker_factory,
        )
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.terminate()


class TestRoundTrip:
    """Decisions and heartbeats across the thread boundary."""

    @pytest.mark.asyncio
    async def test_decisions_in_order(self, make_pipeline, fake_llm_factory, decisions, failures, make_event):
        client = make_pipeline(fake_llm_factory())
        assert client.init() is True
        start = make_event(ConversationEventType.SESSION_START)
        utterance = make_event(text="I had a rough day")

        client.emit(start)
        client.emit(utterance)
        await wait_for(lambda: len(decisions) == 2)

        assert [decision.utterance_id for decision in decisions] == [
            start.utterance_id, utterance.utterance_id,
        ]
        assert decisions[0].reason_code == "session_start"
        assert decisions[1].safety_outcome is SafetyOutcome.GREEN
        assert decisions[1].reason_code == "no_clear_harm_intent"
        assert client.pending_count == 0
        assert client.state is ClientState.READY
        assert failures == []

    @pytest.mark.asyncio
    async def test_heartbeat_reaches_client(self, make_pipeline, fake_llm_factory):
        client = make_pipeline(fake_llm_factory())
        client.init()

        await wait_for(lambda: client.last_heartbeat_at is not None)

        assert isinstance(client.last_heartbeat_at, int)

    @pytest.mark.asyncio
    async def test_worker_detector_escalates(self, make_pipeline, fake_llm_factory, decisions, make_event):
        llm = fake_llm_factory()
        client = make_pipeline(llm)
        client.init()

        client.emit(make_event(text="I need help, I want to die"))
        await wait_for(lambda: len(decisions) == 1)

        assert decisions[0].safety_outcome is SafetyOutcome.TEACHER_REQUIRED
        assert decisions[0].reason_code == SELF_HARM_REASON
        assert llm.prompts == []


class TestSlowModel:
    """A hung or slow model never holds back a critical statement."""

    @pytest.mark.asyncio
    async def test_timeout_fail_safe_escalates_critical_text(
        self, make_pipeline, slow_llm_factory, decisions, failures, make_event,
    ):
        """The worker's own detector misses, the model hangs, the timeout catches it."""
        blind_detector = MagicMock(spec=CriticalPhraseDetector)
        blind_detector.detect.return_value = NO_MATCH
        llm = slow_llm_factory(delay=2.0)
        client = make_pipeline(llm, response_timeout_ms=100, evaluator_detector=blind_detector)
        client.init()

        client.emit(make_event(text="I am going to kill myself after school"))
        await wait_for(lambda: len(decisions) == 1)

        assert decisions[0].safety_outcome is SafetyOutcome.TEACHER_REQUIRED
        assert decisions[0].reason_code == SELF_HARM_REASON
        assert failures == [TIMEOUT_FAILURE]
        assert client.state is ClientState.FAILED
        await wait_for(lambda: llm.closed)

    @pytest.mark.asyncio
    async def test_critical_not_queued_behind_model_calls(
        self, make_pipeline, slow_llm_factory, decisions, make_event,
    ):
        client = make_pipeline(slow_llm_factory(delay=0.4))
        client.init()
        for index in range(4):
            client.emit(make_event(text=f"here is story number {index}"))
        critical = make_event(text="I am going to kill myself")

        started = time.monotonic()
        client.emit(critical)
        elapsed = time.monotonic() - started

        assert elapsed < 0.1
        assert len(decisions) == 1
        assert decisions[0].safety_outcome is SafetyOutcome.TEACHER_REQUIRED
        assert decisions[0].utterance_id == critical.utterance_id
        assert client.state is ClientState.ESCALATED

        # Abandoned model calls never surface
        await asyncio.sleep(0.6)
        assert len(decisions) == 1


class TestTeardown:
    """terminate() while the worker is busy."""

    @pytest.mark.asyncio
    async def test_terminate_with_request_in_flight(
        self, make_pipeline, slow_llm_factory, decisions, failures, make_event,
    ):
        llm = slow_llm_factory(delay=0.5)
        client = make_pipeline(llm)
        client.init()
        client.emit(make_event(text="let me tell you about my cat"))
        await wait_for(lambda: llm.prompts)

        client.terminate()
        await wait_for(lambda: llm.closed)
        await asyncio.sleep(0.6)

        assert decisions == []
        assert failures == []
        assert client.state is ClientState.TERMINATED
