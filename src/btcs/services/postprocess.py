"""Turn raw classifier logits into a labelled decision."""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import List, Mapping, Sequence, Tuple

import numpy as np

from .errors import MalformedOutputError


@dataclass(frozen=True)
class ClassificationResult:
    prediction: str
    confidence: float
    probabilities: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "probabilities", MappingProxyType(dict(self.probabilities)))

    def ranked(self) -> List[Tuple[str, float]]:
        """Labels ordered by descending probability, ties kept in class order."""
        return sorted(self.probabilities.items(), key=lambda item: -item[1])

    def to_dict(self) -> dict:
        return {
            "prediction": self.prediction,
            "confidence": self.confidence,
            "probabilities": dict(self.probabilities),
        }


def softmax(logits: Sequence[float] | np.ndarray, *, stable: bool = True) -> np.ndarray:
    """Normalize scores into a probability distribution.

    ``stable=True`` subtracts the largest logit before exponentiating so
    large-magnitude outputs cannot overflow. ``stable=False`` is the plain
    ``exp(x) / sum(exp(x))`` form; both agree on well-scaled logits.
    """
    values = np.asarray(logits, dtype=np.float64).reshape(-1)
    if stable:
        values = values - values.max()
    exps = np.exp(values)
    return exps / exps.sum()


def argmax_first(values: Sequence[float]) -> int:
    """Index of the largest value; the first one wins on ties."""
    best_index = 0
    best_value = -np.inf
    for index, value in enumerate(values):
        if value > best_value:
            best_index, best_value = index, value
    return best_index


def decide(
    logits: Sequence[float] | np.ndarray,
    labels: Sequence[str],
    *,
    stable: bool = True,
) -> ClassificationResult:
    """Apply softmax and pick the most likely class."""
    values = np.asarray(logits, dtype=np.float64).reshape(-1)
    if values.size == 0:
        raise MalformedOutputError("Model output is empty")
    if values.size != len(labels):
        raise MalformedOutputError(
            f"Model returned {values.size} scores but {len(labels)} class labels are configured"
        )
    if not np.all(np.isfinite(values)):
        raise MalformedOutputError(f"Model output contains non-finite values: {values.tolist()}")

    with np.errstate(over="ignore", invalid="ignore"):
        probabilities = softmax(values, stable=stable)
    if not np.all(np.isfinite(probabilities)):
        raise MalformedOutputError("Softmax overflowed; enable the stabilized softmax")

    index = argmax_first(probabilities)
    return ClassificationResult(
        prediction=labels[index],
        confidence=float(probabilities[index]),
        probabilities={label: float(p) for label, p in zip(labels, probabilities)},
    )


__all__ = ["ClassificationResult", "argmax_first", "decide", "softmax"]
