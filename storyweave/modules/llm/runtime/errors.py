from __future__ import annotations


class GenerationError(RuntimeError):
    """Classified failure of one generation-stage call."""

    def __init__(
        self,
        message: str,
        *,
        code: str,
        retryable: bool = False,
        context: dict | None = None,
    ):
        super().__init__(message)
        self.message = str(message)
        self.code = str(code)
        self.retryable = bool(retryable)
        self.context = dict(context or {})

    def __repr__(self) -> str:
        return f"GenerationError(code={self.code!r}, retryable={self.retryable}, message={self.message!r})"


ERROR_EMPTY_RESPONSE = "EMPTY_RESPONSE"
ERROR_INVALID_JSON = "INVALID_JSON"
ERROR_SCHEMA_VALIDATION = "SCHEMA_VALIDATION"
ERROR_VALIDATION = "VALIDATION_ERROR"
ERROR_NETWORK = "NETWORK_ERROR"
ERROR_TIMEOUT = "TIMEOUT"
ERROR_UNKNOWN = "UNKNOWN_ERROR"

OUTPUT_SCHEMA_VALIDATE = "OUTPUT_SCHEMA_VALIDATE"
OUTPUT_SHAPE = "OUTPUT_SHAPE"


def http_error_code(status_code: int) -> str:
    return f"HTTP_{int(status_code)}"


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


__all__ = [
    "GenerationError",
    "ERROR_EMPTY_RESPONSE",
    "ERROR_INVALID_JSON",
    "ERROR_SCHEMA_VALIDATION",
    "ERROR_VALIDATION",
    "ERROR_NETWORK",
    "ERROR_TIMEOUT",
    "ERROR_UNKNOWN",
    "OUTPUT_SCHEMA_VALIDATE",
    "OUTPUT_SHAPE",
    "http_error_code",
    "is_retryable_status",
]
