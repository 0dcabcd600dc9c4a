from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class ClassifyResponse:
    label: str
    confidence: float
    scores: list[float]
    labels: list[str]
    model_id: str
    display: str
    latency_ms: int


@pydantic_dataclass(frozen=True)
class ActiveModelResponse:
    model_loaded: bool
    model_id: str | None
    backend: str | None
    labels: list[str]
    input_size: int
