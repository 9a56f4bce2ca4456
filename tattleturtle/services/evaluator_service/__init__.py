"""Evaluator Service: model-backed safety evaluation with fail-safe isolation.

Components:
- policy.py: EvaluatorPolicy (timeouts, window size, model) and env loading
- prompt_builder.py: Evaluator prompt and JSON output schema
- transcript.py: Rolling transcript window and per-conversation store
- decision_parser.py: Strict parsing of model output
- evaluator.py: ConversationEvaluator (detector first, then verified model)
- worker.py: EvaluatorWorker, the isolated thread + event loop
- client.py: EvaluatorClient (single outstanding request, timeout, fail-safe)

Usage:
    client = EvaluatorClient(on_decision=handle_decision, on_failure=log_failure)
    if not client.init():
        show_evaluator_offline()
    client.emit(event)
"""

from .client import ClientState, EvaluatorClient
from .decision_parser import ParsedDecision, ParseResult, parse_model_response
from .evaluator import ConversationEvaluator, apply_escalation_gate, is_grounded_quote
from .policy import DEFAULT_POLICY, EvaluatorPolicy, load_policy
from .prompt_builder import EVALUATOR_RESPONSE_SCHEMA, build_evaluator_prompt
from .transcript import TranscriptStore, WorkerState, compact_transcript
from .worker import EvaluatorWorker, WorkerError, WorkerMessage, WorkerMessageKind

__all__ = [
    "ClientState",
    "EvaluatorClient",
    "ParsedDecision",
    "ParseResult",
    "parse_model_response",
    "ConversationEvaluator",
    "apply_escalation_gate",
    "is_grounded_quote",
    "DEFAULT_POLICY",
    "EvaluatorPolicy",
    "load_policy",
    "EVALUATOR_RESPONSE_SCHEMA",
    "build_evaluator_prompt",
    "TranscriptStore",
    "WorkerState",
    "compact_transcript",
    "EvaluatorWorker",
    "WorkerError",
    "WorkerMessage",
    "WorkerMessageKind",
]
