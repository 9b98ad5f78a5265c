from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class ClassProbability:
    label: str
    probability: float
    percent: int


@pydantic_dataclass(frozen=True)
class PredictResponse:
    predicted_class: int
    label: str
    confidence: float
    probabilities: list[float]
    classes: list[ClassProbability]
    model_id: str
    latency_ms: int
