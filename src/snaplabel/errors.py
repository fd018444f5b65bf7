"""Exception hierarchy for the classification pipeline."""

from __future__ import annotations


class SnapLabelError(Exception):
    """Base class for all pipeline errors."""


class NormalizationError(SnapLabelError):
    """The source image could not be decoded or converted for the model."""


class ModelUnavailableError(SnapLabelError):
    """The model failed to load. Not retried for the lifetime of the process."""


class InferenceExecutionError(SnapLabelError):
    """A single inference call failed. Later calls are unaffected."""


class PipelineBusyError(SnapLabelError):
    """A submission arrived while another run was in flight."""
