from __future__ import annotations

from typing import Final

# Index order matches the model's output order.
DEFAULT_LABELS: Final[tuple[str, ...]] = (
    "carrot",
    "eggplant",
    "peas",
    "potato",
    "sweetcorn",
    "tomato",
    "turnip",
)


def label_for(labels: tuple[str, ...], index: int) -> str:
    if not (0 <= index < len(labels)):
        raise IndexError(f"class index {index} outside label table of size {len(labels)}")
    return labels[index]
