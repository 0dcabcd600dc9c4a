from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final

from ..config import DEFAULT_LABELS

LABELS: Final[tuple[str, ...]] = DEFAULT_LABELS
OUTPUT_SHAPE: Final[tuple[int, int]] = (1, len(LABELS))
CHANNELS: Final[int] = 3


@dataclass(frozen=True)
class PredictionResult:
    label: str
    confidence: float


@dataclass(frozen=True)
class ClassifyOutput:
    label: str
    confidence: float
    scores: tuple[float, ...]
    labels: tuple[str, ...]
    model_id: str

    @property
    def result(self) -> PredictionResult:
        return PredictionResult(label=self.label, confidence=self.confidence)


OutputVector = Sequence[float]
