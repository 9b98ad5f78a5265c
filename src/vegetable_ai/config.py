from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

from .labels import DEFAULT_LABELS

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/vegetable_ai.toml")


@dataclass(frozen=True)
class AppConfig:
    threads: int = 0
    port: int = 8081


@dataclass(frozen=True)
class ClassifierConfig:
    model_dir: Path = Path("/data/vegetables/models")
    active_model: str = "vegetables_v1"
    labels: tuple[str, ...] = DEFAULT_LABELS
    stable_softmax: bool = False
    max_image_mb: int = 10
    max_image_side_px: int = 8192
    predict_timeout_seconds: int = 30


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    classifier: ClassifierConfig
    security: SecurityConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("VEGETABLE_AI_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Load env first, then override from TOML if present.
        base = cls(
            app=_load_app_from_env(),
            classifier=_load_classifier_from_env(),
            security=_load_security_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            classifier=_merge_classifier(base.classifier, _toml_table(raw, "classifier")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    th = os.getenv("APP__THREADS")
    pt = os.getenv("APP__PORT")
    if th is not None and th.isdigit():
        a = replace(a, threads=int(th))
    if pt is not None and pt.isdigit():
        a = replace(a, port=_check_port(int(pt), "APP__PORT out of range"))
    return a


def _load_classifier_from_env() -> ClassifierConfig:
    c = ClassifierConfig()
    md = os.getenv("CLASSIFIER__MODEL_DIR")
    am = os.getenv("CLASSIFIER__ACTIVE_MODEL")
    lb = os.getenv("CLASSIFIER__LABELS")
    ss = os.getenv("CLASSIFIER__STABLE_SOFTMAX")
    mb = os.getenv("CLASSIFIER__MAX_IMAGE_MB")
    mx = os.getenv("CLASSIFIER__MAX_IMAGE_SIDE_PX")
    to = os.getenv("CLASSIFIER__PREDICT_TIMEOUT_SECONDS")
    if md:
        c = replace(c, model_dir=Path(md))
    if am:
        c = replace(c, active_model=am)
    if lb is not None:
        c = replace(c, labels=_parse_labels(lb.split(",")))
    if ss is not None:
        c = replace(c, stable_softmax=ss.lower() in {"1", "true", "yes"})
    if mb is not None:
        c = replace(c, max_image_mb=int(mb))
    if mx is not None:
        c = replace(c, max_image_side_px=int(mx))
    if to is not None:
        c = replace(c, predict_timeout_seconds=int(to))
    return c


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _check_port(port: int, message: str) -> int:
    if not (1 <= port <= 65535):
        raise RuntimeError(message)
    return port


def _parse_labels(items: list[object]) -> tuple[str, ...]:
    labels = tuple(str(x).strip() for x in items)
    if len(labels) < 2 or any(not lb for lb in labels):
        raise RuntimeError("labels must name at least two non-empty classes")
    if len(set(labels)) != len(labels):
        raise RuntimeError("labels must be unique")
    return labels


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "threads" in data:
        out = replace(out, threads=int(str(data["threads"])))
    if "port" in data:
        out = replace(out, port=_check_port(int(str(data["port"])), "port out of range"))
    return out


def _merge_classifier(base: ClassifierConfig, data: dict[str, object]) -> ClassifierConfig:
    out = base
    if "model_dir" in data:
        out = replace(out, model_dir=Path(str(data["model_dir"])))
    if "active_model" in data:
        out = replace(out, active_model=str(data["active_model"]))
    if "labels" in data:
        raw = data["labels"]
        if not isinstance(raw, list):
            raise RuntimeError("classifier.labels must be an array of strings")
        out = replace(out, labels=_parse_labels(raw))
    if "stable_softmax" in data:
        out = replace(out, stable_softmax=bool(data["stable_softmax"]))
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=int(str(data["max_image_mb"])))
    if "max_image_side_px" in data:
        out = replace(out, max_image_side_px=int(str(data["max_image_side_px"])))
    if "predict_timeout_seconds" in data:
        out = replace(out, predict_timeout_seconds=int(str(data["predict_timeout_seconds"])))
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    coerced = _coerce_security(data)
    if "api_key" in coerced:
        out = replace(out, api_key=str(coerced["api_key"]))
    return out


def _coerce_security(inp: dict[str, object]) -> dict[str, object]:
    out: dict[str, object] = {}
    api_key_val = inp.get("api_key")
    if isinstance(api_key_val, str):
        out["api_key"] = api_key_val
    enabled = inp.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out["api_key"] = ""
    return out


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.classifier.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.classifier.max_image_side_px),
        )
