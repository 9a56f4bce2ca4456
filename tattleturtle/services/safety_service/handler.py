"""Safety Service HTTP handler - deterministic detector endpoint.

Exposes the critical-phrase detector to operational tooling (canaries,
dashboards, manual checks). The live conversation path calls the detector
in-process; this surface never calls the model.
"""
import logging
import os

from flask import Flask, jsonify, request

from tattleturtle.shared.utils import configure_pii_salt, hash_text_for_audit
from .config import DetectorConfig
from .critical_detector import CriticalPhraseDetector

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

pii_salt = os.getenv("PII_HASH_SALT")
if pii_salt:
    configure_pii_salt(pii_salt)

config = DetectorConfig(
    pattern_version=os.getenv("PATTERN_VERSION", DetectorConfig.pattern_version),
)
detector = CriticalPhraseDetector(config=config)


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint.

    Returns:
        200 with service status
    """
    return jsonify({
        "status": "healthy",
        "service": "safety-service",
        "pattern_version": config.pattern_version,
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check - verifies detector is initialized."""
    if detector is None:
        return jsonify({"status": "not_ready", "reason": "detector_not_initialized"}), 503
    return jsonify({"status": "ready"}), 200


@app.route("/detect", methods=["POST"])
def detect():
    """Run the critical-phrase detector on one piece of text.

    Request Body:
        {"text": "Utterance text"}

    Response:
        {
            "matched": true | false,
            "reason_code": "self_harm_intent_or_plan" (only if matched),
            "evidence_quote": "i want to die" (only if matched),
            "pattern_version": "2026.02.01"
        }
    """
    data = request.get_json(silent=True)
    if not data:
        logger.warning("DETECT_REQUEST_INVALID", extra={"reason": "empty_body"})
        return jsonify({"error": "Request body required"}), 400

    text = data.get("text")
    if not isinstance(text, str):
        logger.warning("DETECT_REQUEST_INVALID", extra={"reason": "missing_text"})
        return jsonify({"error": "Missing required field: text"}), 400

    match = detector.detect(text)

    logger.info(
        "DETECT_REQUEST_COMPLETED",
        extra={
            "text_hash": hash_text_for_audit(text),
            "matched": match.matched,
            "reason_code": match.reason_code,
        }
    )

    response = match.to_dict()
    response["pattern_version"] = config.pattern_version
    return jsonify(response), 200
