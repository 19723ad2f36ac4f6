"""Custom exception hierarchy for the patchflow workflow core.

Exception Hierarchy:
    PatchflowError (base)
    ├── ConfigurationError
    ├── WorkflowError
    │   └── WorkflowNotFoundError
    ├── RecordNotFoundError
    ├── PreconditionError
    ├── StorageError
    └── LLMError
        ├── BudgetExceededError
        ├── ResponseParseError
        ├── ResponseValidationError
        └── ProviderError

Expected failure modes (a missing checkpoint on restore, a failed restore)
are reported through result objects by the services. These exceptions cover
the cases where a caller cannot meaningfully proceed.

Example Usage:
    >>> from patchflow.exceptions import RecordNotFoundError
    >>> try:
    ...     context = await collector.collect_failure_context(workflow_id, run_id)
    ... except RecordNotFoundError as e:
    ...     log.warning("run_missing", run_id=e.record_id)
"""


class PatchflowError(Exception):
    """Base exception for all patchflow errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(PatchflowError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Missing required environment variable
        - Invalid configuration values
    """

    pass


class WorkflowError(PatchflowError):
    """Workflow orchestration errors."""

    pass


class WorkflowNotFoundError(WorkflowError):
    """The referenced workflow does not exist.

    Attributes:
        workflow_id: Identifier that failed to resolve
    """

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class RecordNotFoundError(PatchflowError):
    """A run, checkpoint, patch set or other record does not exist.

    Attributes:
        kind: Record kind, e.g. "run" or "checkpoint"
        record_id: Identifier that failed to resolve
    """

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind.capitalize()} not found: {record_id}")


class PreconditionError(PatchflowError):
    """An operation was requested on a record in the wrong state.

    Examples:
        - Diagnosis requested for a run that did not fail
        - Fix proposal requested for a fix index that does not exist
    """

    pass


class StorageError(PatchflowError):
    """Unexpected failure from the persistence layer."""

    pass


# =============================================================================
# LLM Errors
# =============================================================================


class LLMError(PatchflowError):
    """Base exception for LLM collaborator failures.

    Attributes:
        message: Human-readable error description
        role: Agent role of the failing call, if known
    """

    code = "LLM_ERROR"

    def __init__(self, message: str, role: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            role: Agent role of the failing call
        """
        self.role = role
        full_message = message if not role else f"{message} (role: {role})"
        super().__init__(full_message)
        # Preserve original message
        self.message = message


class BudgetExceededError(LLMError):
    """Estimated input tokens or response cost exceeded the token budget."""

    code = "BUDGET_EXCEEDED"


class ResponseParseError(LLMError):
    """Model output could not be parsed as JSON."""

    code = "PARSE_ERROR"


class ResponseValidationError(LLMError):
    """Model output parsed but did not match the requested schema."""

    code = "VALIDATION_ERROR"


class ProviderError(LLMError):
    """The LLM provider call failed.

    Attributes:
        status_code: HTTP status code (if applicable)
    """

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        role: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            role: Agent role of the failing call
        """
        self.status_code = status_code
        if status_code and str(status_code) not in message:
            message = f"{message} (HTTP {status_code})"
        super().__init__(message, role=role)
