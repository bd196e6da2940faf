from typing import Optional


class ExtractionError(ValueError):
    """A completion response could not be turned into the expected JSON shape."""

    def __init__(self, message: str, raw_response: Optional[str] = None):
        super().__init__(message)
        self.raw_response = raw_response


class EnrichmentError(ExtractionError):
    """A single feedback item could not be enriched."""


class ClusteringError(ExtractionError):
    """The clustering batch call failed; fatal for the clustering stage."""


class InvalidStateTransition(RuntimeError):
    """A pipeline run was asked to move to a state it cannot reach."""
