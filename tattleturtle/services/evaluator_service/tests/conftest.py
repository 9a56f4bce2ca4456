"""Shared fixtures for evaluator service tests."""
import json

import pytest

from tattleturtle.shared.models import ConversationEvent, ConversationEventType, EventRole
from tattleturtle.shared.utils import configure_pii_salt
from tattleturtle.services.llm_service import LLMConfig, LLMProvider, StructuredLLM
from tattleturtle.services.evaluator_service.policy import EvaluatorPolicy


class FakeLLM(StructuredLLM):
    """Scripted model: returns queued responses or raises a set error."""

    def __init__(self, responses=None, error=None):
        super().__init__(LLMConfig(provider=LLMProvider.OPENAI, model_name="fake-model"))
        self.responses = list(responses or [])
        self.error = error
        self.prompts = []
        self.closed = False

    async def generate_json(self, prompt, schema, schema_name="structured_output"):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        if not self.responses:
            return json.dumps({
                "safetyOutcome": "GREEN",
                "shouldEndConversation": False,
                "reasonCode": "no_clear_harm_intent",
                "confidence": 0.8,
            })
        response = self.responses.pop(0)
        return response if isinstance(response, str) else json.dumps(response)

    async def aclose(self):
        self.closed = True


@pytest.fixture(autouse=True)
def setup_pii_salt():
    """Configure PII salt before each test."""
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def policy():
    return EvaluatorPolicy()


@pytest.fixture
def fake_llm_factory():
    return FakeLLM


@pytest.fixture
def make_event():
    """Build events for one conversation with increasing utterance ids."""
    counter = {"utterance_id": 0}

    def _make(event_type=ConversationEventType.STUDENT_UTTERANCE, text=None, role=None,
              conversation_id="student-abc12345-1700000000000-a1b2c3", student_id="student-abc12345"):
        if role is None:
            role = {
                ConversationEventType.STUDENT_UTTERANCE: EventRole.STUDENT,
                ConversationEventType.MODEL_UTTERANCE: EventRole.MODEL,
                ConversationEventType.MANUAL_TEACHER_REQUEST: EventRole.STUDENT,
            }.get(event_type, EventRole.SYSTEM)
        event = ConversationEvent(
            type=event_type,
            role=role,
            student_id=student_id,
            conversation_id=conversation_id,
            utterance_id=counter["utterance_id"],
            text=text,
        )
        counter["utterance_id"] += 1
        return event

    return _make
