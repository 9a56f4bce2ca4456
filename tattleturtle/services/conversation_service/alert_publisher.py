"""Teacher alert publisher.

Publishes TEACHER_REQUIRED decisions to a Kinesis stream so the
classroom dashboard can page the teacher. Publishing is notification
only: the conversation has already been stopped by the time an alert
goes out, so failures are logged and never raised.
"""
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from tattleturtle.shared.models import SafetyDecision
from tattleturtle.shared.utils import hash_pii

logger = logging.getLogger(__name__)


DEFAULT_STREAM_NAME = "tattleturtle-teacher-alerts"


@dataclass(frozen=True)
class TeacherAlertEvent:
    """Immutable teacher alert built from one escalating decision."""
    event_id: str
    student_id_hash: str
    conversation_id_hash: str
    utterance_id: int
    reason_code: str
    confidence: float
    should_end_conversation: bool
    teacher_notice: Optional[str] = None
    event_type: str = "safety.teacher.required"
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def from_decision(cls, decision: SafetyDecision) -> "TeacherAlertEvent":
        return cls(
            event_id=f"evt_{uuid.uuid4().hex[:12]}",
            student_id_hash=hash_pii(decision.student_id),
            conversation_id_hash=hash_pii(decision.conversation_id),
            utterance_id=decision.utterance_id,
            reason_code=decision.reason_code,
            confidence=decision.confidence,
            should_end_conversation=decision.should_end_conversation,
            teacher_notice=decision.teacher_notice,
        )

    def to_kinesis_payload(self, include_notice: bool = True) -> dict:
        """Convert to Kinesis record payload.

        Args:
            include_notice: Whether to include the teacher notice, which
                can quote the student verbatim

        Returns:
            Dictionary for the Kinesis put_record Data field
        """
        data = {
            "student_id_hash": self.student_id_hash,
            "conversation_id_hash": self.conversation_id_hash,
            "utterance_id": self.utterance_id,
            "reason_code": self.reason_code,
            "confidence": self.confidence,
            "should_end_conversation": self.should_end_conversation,
        }
        if include_notice:
            data["teacher_notice"] = self.teacher_notice
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp.isoformat() + "Z",
            "source": "evaluator-client",
            "data": data,
        }


class TeacherAlertPublisher:
    """Publishes teacher alerts to Kinesis.

    Failure Handling:
        - Publishing failure does NOT undo the escalation
        - Failures are logged at CRITICAL level for manual follow-up
    """

    def __init__(
        self,
        stream_name: Optional[str] = None,
        enabled: Optional[bool] = None,
        region: Optional[str] = None,
    ):
        """Initialize publisher.

        Args:
            stream_name: Kinesis stream (defaults to KINESIS_STREAM_NAME env var)
            enabled: Whether publishing is enabled (defaults to
                TEACHER_ALERT_PUBLISHING_ENABLED env var)
            region: AWS region (defaults to AWS_REGION env var)
        """
        self.stream_name = stream_name or os.getenv("KINESIS_STREAM_NAME", DEFAULT_STREAM_NAME)
        if enabled is None:
            enabled = os.getenv("TEACHER_ALERT_PUBLISHING_ENABLED", "true").lower() == "true"
        self.enabled = enabled
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._kinesis_client = None

        logger.info(
            "TEACHER_ALERT_PUBLISHER_INITIALIZED",
            extra={
                "stream_name": self.stream_name,
                "enabled": self.enabled,
                "region": self.region,
            }
        )

    @property
    def kinesis_client(self):
        """Lazy initialization of Kinesis client."""
        if self._kinesis_client is None and self.enabled:
            try:
                import boto3
                self._kinesis_client = boto3.client(
                    "kinesis",
                    region_name=self.region,
                )
            except Exception as e:
                logger.error(
                    "KINESIS_CLIENT_INIT_FAILED",
                    extra={"error": str(e)}
                )
        return self._kinesis_client

    def publish_alert(self, decision: SafetyDecision) -> bool:
        """Publish a teacher alert for an escalating decision.

        Args:
            decision: A TEACHER_REQUIRED SafetyDecision

        Returns:
            True if published successfully, False otherwise
        """
        if not decision.requires_teacher:
            logger.warning(
                "TEACHER_ALERT_SKIPPED",
                extra={"reason": "not_teacher_required", "reason_code": decision.reason_code}
            )
            return False

        event = TeacherAlertEvent.from_decision(decision)

        if not self.enabled:
            logger.info(
                "TEACHER_ALERT_SKIPPED",
                extra={"event_id": event.event_id, "reason": "publishing_disabled"}
            )
            return False

        if self.kinesis_client is None:
            logger.critical(
                "TEACHER_ALERT_FALLBACK_LOG",
                extra={
                    "event_id": event.event_id,
                    "payload": json.dumps(event.to_kinesis_payload(include_notice=False)),
                    "reason": "kinesis_client_unavailable",
                    "action": "MANUAL_PROCESSING_REQUIRED",
                }
            )
            return False

        try:
            response = self.kinesis_client.put_record(
                StreamName=self.stream_name,
                Data=json.dumps(event.to_kinesis_payload()),
                PartitionKey=event.student_id_hash,
            )
        except Exception as e:
            logger.critical(
                "TEACHER_ALERT_PUBLISH_FAILED",
                extra={
                    "event_id": event.event_id,
                    "student_id_hash": event.student_id_hash,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action": "MANUAL_REVIEW_REQUIRED",
                    "payload": json.dumps(event.to_kinesis_payload(include_notice=False)),
                }
            )
            return False

        logger.critical(
            "TEACHER_ALERT_PUBLISHED",
            extra={
                "event_id": event.event_id,
                "student_id_hash": event.student_id_hash,
                "reason_code": event.reason_code,
                "shard_id": response.get("ShardId"),
                "sequence_number": response.get("SequenceNumber"),
            }
        )
        return True
