class GradebookError(Exception):
    """Base class for gradebook engine errors."""


class NotFoundError(GradebookError):
    """Raised when a referenced scheme, run, section or record does not exist."""


class ValidationError(GradebookError, ValueError):
    """Raised when an input payload is invalid."""


class ConfigurationError(GradebookError):
    """Raised when grading configuration cannot support a computation."""


class ComputationError(GradebookError):
    """Raised for unexpected internal failures while computing a run."""


class RunStateError(GradebookError):
    """Raised when a compute run is not in the state an operation requires."""


class LinkConflictError(GradebookError):
    """Raised when a computed grade or grade entry is already linked elsewhere."""
