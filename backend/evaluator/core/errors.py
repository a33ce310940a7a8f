"""
errors.py — Error taxonomy for the evaluation pipeline.

Validation and configuration errors reach the HTTP boundary as structured
bodies. Gateway and response-shape errors are absorbed into fallback results.
"""

from typing import Optional


class EvaluationError(Exception):
    """Base class for every error raised inside the evaluator."""


class RequestValidationError(EvaluationError):
    """Malformed or incomplete evaluation request (HTTP 4xx, never retried)."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ConfigurationError(EvaluationError):
    """Missing API credential or other operator-fixable setup problem (HTTP 500)."""

    def __init__(self, message: str, details: str = ""):
        super().__init__(message)
        self.message = message
        self.details = details


class GatewayError(EvaluationError):
    """Network failure or non-2xx answer from the generative backend."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.message = message
        self.status = status
        self.body = body

    @property
    def is_invalid_key(self) -> bool:
        if self.status in (401, 403):
            return True
        text = f"{self.message} {self.body}".lower()
        return self.status == 400 and ("api key not valid" in text or "api_key_invalid" in text)

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"{self.message} (HTTP {self.status})"


class ResponseShapeError(EvaluationError):
    """Model completion that is not JSON or does not match the expected shape."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.message = message
        self.raw_text = raw_text
