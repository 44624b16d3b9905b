"""Error taxonomy of the assistant.

Only tool failures are recovered inside a run (they are fed back to the
model). Every other error ends the run; the endpoints turn them into HTTP
responses using ``status_code`` and the caller-safe ``message``.
"""

from fastapi import status


class AIServiceError(Exception):
    kind = "ai_service_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(AIServiceError):
    """The model capability is not provisioned; no run is attempted."""

    kind = "configuration_error"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class PromptValidationError(AIServiceError):
    kind = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class ScopeDeniedError(AIServiceError):
    kind = "scope_denied"
    status_code = status.HTTP_403_FORBIDDEN


class UpstreamFailure(AIServiceError):
    """The model could not be reached or answered with garbage.

    ``message`` is generic on purpose; the provider diagnostics travel in
    ``detail`` and only reach the logs and the usage record.
    """

    kind = "upstream_failure"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, detail: str, timed_out: bool = False):
        super().__init__("Failed to get response from AI")
        self.detail = detail
        self.timed_out = timed_out


class ToolError(Exception):
    """Soft failure raised by a tool executor, e.g. ``not_found``."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message
