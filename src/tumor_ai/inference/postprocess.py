from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np

from ..errors import EmptyOutput
from .types import LABELS, PredictionResult


def postprocess(output: Sequence[float], labels: Sequence[str] = LABELS) -> PredictionResult:
    """Pick the highest score; the lowest index wins exact ties.

    The confidence is the raw score, not re-normalized.
    """
    n = len(labels)
    if n == 0 or len(output) != n:
        raise EmptyOutput(f"expected {n} scores, got {len(output)}")
    values = [float(v) for v in output]
    if not all(math.isfinite(v) for v in values):
        raise EmptyOutput("model output contains non-finite scores")
    top_idx = 0
    best = values[0]
    for i in range(1, n):
        v = values[i]
        if v > best:
            best = v
            top_idx = i
    return PredictionResult(label=labels[top_idx], confidence=best)


def confidence_percent(confidence: float) -> int:
    # Scores come from a float32 model output, so scale in float32: 0.7 -> 70, not 69
    return int(np.float32(confidence) * np.float32(100.0))


def format_result(result: PredictionResult) -> str:
    return f"{result.label} - {confidence_percent(result.confidence)}%"
