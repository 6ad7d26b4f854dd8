"""Turn a raw score vector into a labeled, ranked prediction."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


@dataclass(frozen=True)
class ClassScore:
    """Score for a single class."""

    class_name: str
    probability: float
    percentage: str


@dataclass(frozen=True)
class PredictionResult:
    """Top class plus every class ranked by probability (descending)."""

    predicted_class: str
    confidence: float
    confidence_percentage: str
    all_predictions: tuple[ClassScore, ...]

    def top(self, n: int) -> tuple[ClassScore, ...]:
        return self.all_predictions[:n]


def _percentage(probability: float) -> str:
    return f"{probability * 100:.2f}"


def format_prediction(probabilities: Sequence[float], class_names: Sequence[str]) -> PredictionResult:
    """Pair scores with class names positionally and rank them.

    Scores are reported as-is, not renormalized. Ties for the top score go to
    the lowest index, and the ranking keeps class order among equal scores.

    Raises:
        ValueError: If the number of scores and class names differ.
    """
    scores = [float(p) for p in probabilities]
    if len(scores) != len(class_names):
        raise ValueError(f"Got {len(scores)} scores for {len(class_names)} classes")
    if not scores:
        raise ValueError("Cannot format an empty score vector")

    # max() returns the first maximal index.
    best = max(range(len(scores)), key=scores.__getitem__)
    confidence = scores[best]

    ranked = sorted(
        (ClassScore(name, p, _percentage(p)) for name, p in zip(class_names, scores, strict=True)),
        key=lambda score: score.probability,
        reverse=True,
    )

    return PredictionResult(
        predicted_class=class_names[best],
        confidence=round(confidence, 4),
        confidence_percentage=_percentage(confidence),
        all_predictions=tuple(ranked),
    )
