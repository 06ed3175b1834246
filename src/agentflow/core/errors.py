"""
Error taxonomy shared by the resilience layer, the gateway and the workflow engine.

Each error carries a short ``code`` so the retry policy can match it against an allow-list
without parsing messages.
"""


class AgentflowError(Exception):
    """Base class for all errors raised by agentflow."""

    code: str = "INTERNAL_ERROR"


class ConfigurationError(AgentflowError):
    """A required setting (e.g. the provider credential) is missing.  Never retried."""

    code = "CONFIGURATION"


class UpstreamError(AgentflowError):
    """The LLM provider answered with a non-success status."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        self.code = str(status_code)
        super().__init__(f"LLM API error: {status_code} - {detail}")


class InvalidResponseError(AgentflowError):
    """The provider response body could not be read or decoded."""

    code = "INVALID_RESPONSE"


class OperationTimeoutError(AgentflowError, TimeoutError):
    """An operation exceeded its time budget."""

    code = "ETIMEDOUT"

    def __init__(self, label: str, timeout_ms: float) -> None:
        self.label = label
        self.timeout_ms = timeout_ms
        super().__init__(f'Operation "{label}" timed out after {timeout_ms:g}ms')


class CircuitOpenError(AgentflowError):
    """The circuit breaker for a service is open; the call was not attempted."""

    code = "CIRCUIT_OPEN"

    def __init__(self, service: str) -> None:
        self.service = service
        super().__init__(f"Circuit breaker is open for service: {service}")


class ToolExecutionError(AgentflowError):
    """Raised when a requested tool cannot run or fails."""

    code = "TOOL_EXECUTION_FAILED"


class QuotaExceededError(AgentflowError):
    """A user is over one of their token or cost limits."""

    code = "QUOTA_EXCEEDED"


class WorkflowError(AgentflowError):
    """A workflow turn ended with an ``error`` event."""

    code = "WORKFLOW_FAILED"
