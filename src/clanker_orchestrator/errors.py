"""Exceptions raised by the orchestrator core.

The HTTP layer maps each class onto a status code: ``NotFound`` to 404,
``InvalidRequest`` to 400, any ``ProvisioningError`` to 500 and
``UpstreamUnavailable`` to 502.
"""


class OrchestratorError(Exception):
    """Base class for orchestrator failures."""


class NotFound(OrchestratorError):
    """Raised when a project or task does not exist."""


class InvalidRequest(OrchestratorError):
    """Raised when a request carries an unusable value."""


class ProvisioningError(OrchestratorError):
    """Raised when a step of task provisioning fails."""


class CloneError(ProvisioningError):
    """Raised when cloning a project's upstream fails."""


class WorktreeError(ProvisioningError):
    """Raised when a task worktree cannot be created."""


class SpawnError(ProvisioningError):
    """Raised when a backend process cannot be launched or never becomes ready."""


class UpstreamUnavailable(OrchestratorError):
    """Raised when the proxy cannot resolve or reach a task backend."""


class StateFileError(OrchestratorError):
    """Raised when the persisted state file cannot be parsed."""
