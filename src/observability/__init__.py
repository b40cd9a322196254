"""Observability for the automation layer.

This module provides:
- setup_logging: structlog configuration (JSON or console output)
- SecretRedactor: processor that keeps secrets and keys out of log lines
"""

from src.observability.logging import SENSITIVE_KEYS, SecretRedactor, setup_logging

__all__ = [
    "SENSITIVE_KEYS",
    "SecretRedactor",
    "setup_logging",
]
