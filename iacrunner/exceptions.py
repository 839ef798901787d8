"""Runner exceptions."""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass


class OrchestratorError(Exception):
    """Base class for all runner errors.

    Every error can be turned into the structured ``{type, message, context}``
    dict recorded on a step, so the cause survives even though the task-level
    status only says ``failed``.
    """

    error_type = "orchestrator_error"
    exit_code = 1

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_error(self) -> Dict[str, Any]:
        return {
            "type": self.error_type,
            "message": self.message,
            "context": dict(self.context),
        }


class ConfigurationError(OrchestratorError):
    """Invalid working directory, malformed template context, bad request."""

    error_type = "configuration_error"
    exit_code = 2


class UnknownTypeError(ConfigurationError):
    """Raised for a task or step type that has no definition."""

    error_type = "unknown_type"


class SecretError(OrchestratorError):
    """A variable value or the private key could not be decrypted."""

    error_type = "secret_error"


class WorkspaceError(OrchestratorError):
    """Filesystem failure while preparing a task workspace."""

    error_type = "io_error"


class ExecutionError(OrchestratorError):
    """The container runtime failed to start or report on a step."""

    error_type = "execution_error"


class IllegalTransitionError(OrchestratorError):
    """Status change not allowed by the transition table."""

    error_type = "illegal_transition"

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"illegal {entity} transition '{current}' -> '{target}'",
            {"entity": entity, "from": current, "to": target},
        )
        self.current = current
        self.target = target


@dataclass
class ValidationError:
    """Single validation error."""
    message: str
    path: str = ""
    exit_code: int = 2


class ConfigValidationError(Exception):
    """Raised when the runner configuration file fails validation.

    The loader collects every problem before raising, so the CLI can report
    them together and map them to exit code 2.
    """

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        self.exit_code = 2

        messages = []
        for error in errors:
            if error.path:
                messages.append(f"Validation error at '{error.path}': {error.message}")
            else:
                messages.append(f"Validation error: {error.message}")

        super().__init__("\n".join(messages))
