"""Tattle Turtle services.

- safety_service: Deterministic critical-phrase detection (runs before any model)
- llm_service: External structured-generation capability
- evaluator_service: Isolated model-backed evaluator with fail-safe client
- conversation_service: Event emission, decision handling and teacher alerts

All services log student and conversation identifiers only via hash_pii().
"""
