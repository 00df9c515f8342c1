"""Typed failures raised by the inference pipeline."""
from __future__ import annotations


class BTCSError(Exception):
    """Base class for every error the pipeline raises on purpose."""


class DecodeError(BTCSError):
    """The uploaded bytes could not be decoded into pixel data."""


class ModelLoadError(BTCSError):
    """The model artifact is missing, unreadable or incompatible."""


class InferenceError(BTCSError):
    """The forward pass failed (bad tensor shape, runtime failure, timeout)."""


class MalformedOutputError(BTCSError):
    """The model produced an output that does not fit the label set."""


class AnalysisFailed(BTCSError):
    """Single failure surfaced to the presentation layer.

    ``stage`` names the pipeline step that failed and ``cause`` holds the
    underlying error so callers can decide how to report it.
    """

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"Analysis failed during {stage}: {cause}")

    @property
    def error_type(self) -> str:
        return type(self.cause).__name__

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "error": self.error_type,
            "message": str(self.cause),
        }


__all__ = [
    "AnalysisFailed",
    "BTCSError",
    "DecodeError",
    "InferenceError",
    "MalformedOutputError",
    "ModelLoadError",
]
