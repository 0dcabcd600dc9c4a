from __future__ import annotations

import time

from PIL import Image
from torch import Tensor

from .inference.engine import InferenceEngine
from .inference.postprocess import postprocess
from .inference.types import ClassifyOutput
from .logging import log_event
from .preprocess import decode_image, preprocess


class Classifier:
    """Decode, preprocess, run and postprocess one image against a shared engine.

    The engine is owned by the caller; a Classifier never loads or closes it.
    """

    def __init__(self, engine: InferenceEngine) -> None:
        self._engine = engine

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    def classify_bytes(self, raw: bytes) -> ClassifyOutput:
        return self.classify_image(decode_image(raw))

    def classify_image(self, img: Image.Image) -> ClassifyOutput:
        t0 = time.perf_counter()
        scores = self._engine.run(self.prepare(img))
        return self.finish(scores, t0)

    def prepare(self, img: Image.Image) -> Tensor:
        return preprocess(img, self._engine.input_size)

    def finish(self, scores: list[float], t0: float) -> ClassifyOutput:
        """Turn raw scores into a ClassifyOutput; ``t0`` is the perf_counter start."""
        labels = self._engine.labels
        result = postprocess(scores, labels)
        out = ClassifyOutput(
            label=result.label,
            confidence=result.confidence,
            scores=tuple(scores),
            labels=labels,
            model_id=self._engine.model_id or "",
        )
        log_event(
            "classify_finished",
            {
                "latency_ms": int((time.perf_counter() - t0) * 1000.0),
                "label": out.label,
                "confidence": float(out.confidence),
                "model_id": out.model_id,
            },
        )
        return out
