from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Final, Literal

ModelFormat = Literal["torchscript", "state_dict"]

_SCHEMA_VERSIONS: Final[tuple[str, ...]] = ("v1",)
_FORMATS: Final[tuple[ModelFormat, ...]] = ("torchscript", "state_dict")


@dataclass(frozen=True)
class ModelManifest:
    schema_version: str
    model_id: str
    format: ModelFormat
    arch: str
    n_classes: int
    version: str
    created_at: datetime
    preprocess_hash: str
    labels: tuple[str, ...] | None = None

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        return ModelManifest.from_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        data: dict[str, object] = {str(k): v for k, v in obj.items()}
        return ModelManifest.from_dict(data)

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        created_at_str = str(d.get("created_at", ""))
        created = datetime.fromisoformat(created_at_str) if created_at_str else datetime.now()
        n_classes = int(str(d.get("n_classes", 0)))
        if n_classes < 2:
            raise ValueError("n_classes must be >= 2")
        schema_version = str(d.get("schema_version", "")).strip()
        model_id = str(d.get("model_id", "")).strip()
        version = str(d.get("version", "")).strip()
        preprocess_hash = str(d.get("preprocess_hash", "")).strip()
        if not schema_version or not model_id or not version or not preprocess_hash:
            raise ValueError("manifest is missing required fields")
        if schema_version not in _SCHEMA_VERSIONS:
            raise ValueError("unsupported manifest schema version")
        fmt = _parse_format(d.get("format", "torchscript"))
        arch = str(d.get("arch", "")).strip()
        if fmt == "state_dict" and not arch:
            raise ValueError("state_dict manifests must name an arch")
        labels = _parse_labels(d.get("labels"), n_classes)
        return ModelManifest(
            schema_version=schema_version,
            model_id=model_id,
            format=fmt,
            arch=arch,
            n_classes=n_classes,
            version=version,
            created_at=created,
            preprocess_hash=preprocess_hash,
            labels=labels,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "model_id": self.model_id,
            "format": self.format,
            "arch": self.arch,
            "n_classes": self.n_classes,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "preprocess_hash": self.preprocess_hash,
            "labels": list(self.labels) if self.labels is not None else None,
        }


def _parse_format(raw: object) -> ModelFormat:
    for fmt in _FORMATS:
        if raw == fmt:
            return fmt
    raise ValueError(f"unsupported model format: {raw!r}")


def _parse_labels(raw: object, n_classes: int) -> tuple[str, ...] | None:
    if raw is None:
        return None
    if not isinstance(raw, list) or not all(isinstance(x, str) for x in raw):
        raise ValueError("labels must be a list of strings")
    if len(raw) != n_classes:
        raise ValueError("labels length does not match n_classes")
    return tuple(str(x) for x in raw)
