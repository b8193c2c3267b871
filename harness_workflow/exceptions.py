"""Custom exception hierarchy for the workflow harness.

Most engine outcomes are reported as structured results rather than
exceptions: an invalid transition, an unknown workflow id or a corrupt state
file is an expected condition the caller can recover from. The exceptions
below cover the remaining cases where continuing makes no sense.

Exception Hierarchy:
    HarnessError (base)
    ├── ConfigurationError
    │   └── HarnessNotInstalledError
    ├── WorkflowError
    │   ├── PersistenceError
    │   └── StaleInstanceError
    └── ExternalSyncError

Example Usage:
    >>> from harness_workflow.exceptions import HarnessNotInstalledError
    >>> try:
    ...     settings = load_project_settings(root)
    ... except HarnessNotInstalledError as e:
    ...     print(e.message)
"""


class HarnessError(Exception):
    """Base exception for all harness errors.

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


class ConfigurationError(HarnessError):
    """Configuration-related errors.

    Raised when the project configuration file is unreadable, is not valid
    YAML, or fails validation.
    """

    pass


class HarnessNotInstalledError(ConfigurationError):
    """No project configuration exists at the given root.

    This is the *setup required* condition. It is kept separate from engine
    errors so callers can point the user at ``harness init``.

    Attributes:
        project_root: Root directory that was searched
    """

    def __init__(self, project_root: str) -> None:
        """Initialize exception.

        Args:
            project_root: Root directory that has no configuration
        """
        self.project_root = project_root
        super().__init__(f"Harness is not installed in {project_root}. Run 'harness init' first.")


class WorkflowError(HarnessError):
    """Workflow state errors that cannot be expressed as a result."""

    pass


class PersistenceError(WorkflowError):
    """A state document could not be written.

    Attributes:
        path: File that failed to write
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            path: File that failed to write
        """
        self.path = path
        full_message = f"{message} ({path})" if path else message
        super().__init__(full_message)
        self.message = message


class StaleInstanceError(WorkflowError):
    """The instance on disk changed since it was loaded.

    Attributes:
        workflow_id: Instance that was modified concurrently
        expected_revision: Revision the writer loaded
        actual_revision: Revision currently on disk
    """

    def __init__(self, workflow_id: str, expected_revision: int, actual_revision: int) -> None:
        """Initialize exception.

        Args:
            workflow_id: Instance that was modified concurrently
            expected_revision: Revision the writer loaded
            actual_revision: Revision currently on disk
        """
        self.workflow_id = workflow_id
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision
        super().__init__(
            f"Workflow {workflow_id} was modified by another invocation "
            f"(expected revision {expected_revision}, found {actual_revision})"
        )


class ExternalSyncError(HarnessError):
    """Writing into the external orchestration tool failed.

    Only raised inside the external bridge; the public sync functions catch
    it and report a soft failure.
    """

    pass
