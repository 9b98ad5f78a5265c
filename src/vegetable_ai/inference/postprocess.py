from __future__ import annotations

import math
from collections.abc import Sequence

import torch

from ..errors import InferenceError


def softmax(scores: Sequence[float], *, stable: bool = False) -> tuple[float, ...]:
    """Convert raw class scores into a probability distribution.

    By default each score is exponentiated as-is, which overflows for scores
    above roughly 709. With ``stable=True`` the maximum score is subtracted
    first; results only differ in those extreme cases. Non-finite output is
    reported as an ``InferenceError`` rather than returned.
    """
    if len(scores) == 0:
        raise InferenceError("empty score vector")
    logits = torch.tensor([float(s) for s in scores], dtype=torch.float64)
    if stable:
        logits = logits - logits.max()
    exps = torch.exp(logits)
    probs = exps / exps.sum()
    out = tuple(float(p) for p in probs.tolist())
    if not all(math.isfinite(p) for p in out):
        raise InferenceError("softmax produced non-finite probabilities")
    return out


def argmax(values: Sequence[float]) -> int:
    """Index of the largest value; the lowest index wins ties."""
    if len(values) == 0:
        raise ValueError("argmax of empty sequence")
    top_idx = 0
    best = values[0]
    for i in range(1, len(values)):
        if values[i] > best:
            best = values[i]
            top_idx = i
    return top_idx
