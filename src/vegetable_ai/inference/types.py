from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from torch import Tensor


class ModelState(str, Enum):
    unloaded = "unloaded"
    loading = "loading"
    ready = "ready"
    failed = "failed"


@dataclass(frozen=True)
class PredictOutput:
    predicted_class: int
    confidence: float
    probs: tuple[float, ...]  # label table order
    model_id: str


@dataclass(frozen=True)
class PreprocessOutput:
    tensor: Tensor  # (1, 3, 128, 128) float32


@dataclass(frozen=True)
class PredictionResult:
    probabilities: tuple[float, ...]
    predicted_class: int
    label: str
    labels: tuple[str, ...]
    model_id: str
    latency_ms: int = 0

    @property
    def confidence(self) -> float:
        return self.probabilities[self.predicted_class]

