"""Error taxonomy shared by the analysis pipeline.

Every error carries a human-readable message that is safe to show to the
caller; the coordinator turns these into ``{"success": False, "error": ...}``
reports.
"""


class BiasPipelineError(Exception):
    """Base class for pipeline errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConsentError(BiasPipelineError):
    """Raised when content arrives without a recorded consent flag."""

    def __init__(self, message: str = "User consent not provided"):
        super().__init__(message)


class InsufficientDataError(BiasPipelineError, ValueError):
    """Raised when a prediction batch is too small for statistical analysis."""


class ModelFetchError(BiasPipelineError):
    """Raised when the authoritative model source cannot be reached."""


class ModelNotFoundError(BiasPipelineError, LookupError):
    """Raised when an operation references a model id that was never initialized."""

    def __init__(self, model_id: str):
        super().__init__(f"Model not found: {model_id}")
        self.model_id = model_id


class InvalidImportError(BiasPipelineError, ValueError):
    """Raised when persisted state is malformed; the previous state is kept."""
