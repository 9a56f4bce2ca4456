"""Evaluation policy: static configuration for the safety evaluator."""
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from tattleturtle.shared.models import SafetyOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluatorPolicy:
    """Configuration shared by the evaluator worker and client."""

    # Model identifier passed to the structured-generation capability
    model: str = "gpt-4o-mini"

    # Character budget for the rolling transcript (<= 0 disables compaction)
    rolling_window_limit: int = 4000

    # Hard ceiling from request dispatch to decision receipt
    response_timeout_ms: int = 12000

    # Worker liveness signal interval
    heartbeat_interval_ms: int = 4000

    # Outcome used by the fail-safe when no critical phrase is found
    fail_safe_outcome: SafetyOutcome = SafetyOutcome.GREEN

    # Confidence reported when the model is unavailable or returns garbage
    degraded_confidence: float = 0.35

    # Confidence used when the model's confidence is not a finite number
    default_confidence: float = 0.5

    # Minimum normalized length for an evidence quote to count
    min_evidence_chars: int = 6

    @property
    def response_timeout_seconds(self) -> float:
        return self.response_timeout_ms / 1000

    @property
    def heartbeat_interval_seconds(self) -> float:
        return self.heartbeat_interval_ms / 1000


DEFAULT_POLICY = EvaluatorPolicy()


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "EVALUATOR_POLICY_INVALID_SETTING",
            extra={"setting": name, "fallback": default}
        )
        return default


def load_policy(env: Optional[Mapping[str, str]] = None) -> EvaluatorPolicy:
    """Build the policy from environment variables.

    Args:
        env: Mapping to read from (defaults to os.environ)

    Returns:
        EvaluatorPolicy with overrides applied
    """
    env = os.environ if env is None else env

    fail_safe_raw = env.get("EVALUATOR_FAIL_SAFE_OUTCOME", DEFAULT_POLICY.fail_safe_outcome.value)
    try:
        fail_safe_outcome = SafetyOutcome(fail_safe_raw.strip().upper())
    except ValueError:
        logger.warning(
            "EVALUATOR_POLICY_INVALID_SETTING",
            extra={"setting": "EVALUATOR_FAIL_SAFE_OUTCOME", "fallback": "GREEN"}
        )
        fail_safe_outcome = SafetyOutcome.GREEN

    policy = EvaluatorPolicy(
        model=env.get("EVALUATOR_MODEL") or DEFAULT_POLICY.model,
        rolling_window_limit=_int_setting(
            env, "EVALUATOR_ROLLING_WINDOW_LIMIT", DEFAULT_POLICY.rolling_window_limit
        ),
        response_timeout_ms=_int_setting(
            env, "EVALUATOR_RESPONSE_TIMEOUT_MS", DEFAULT_POLICY.response_timeout_ms
        ),
        heartbeat_interval_ms=_int_setting(
            env, "EVALUATOR_HEARTBEAT_INTERVAL_MS", DEFAULT_POLICY.heartbeat_interval_ms
        ),
        fail_safe_outcome=fail_safe_outcome,
    )

    logger.info(
        "EVALUATOR_POLICY_LOADED",
        extra={
            "model": policy.model,
            "rolling_window_limit": policy.rolling_window_limit,
            "response_timeout_ms": policy.response_timeout_ms,
            "fail_safe_outcome": policy.fail_safe_outcome.value,
        }
    )
    return policy
