from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

from vegetable_ai.config import Limits, Settings
from vegetable_ai.labels import DEFAULT_LABELS


def _load_with_env(env: dict[str, str]) -> Settings:
    old = os.environ.copy()
    try:
        os.environ.clear()
        os.environ.update(env)
        return Settings.load()
    finally:
        os.environ.clear()
        os.environ.update(old)


def _env_without_config(td: str) -> dict[str, str]:
    env = os.environ.copy()
    env["VEGETABLE_AI_CONFIG"] = (Path(td) / "missing.toml").as_posix()
    return env


def test_defaults_without_config() -> None:
    with tempfile.TemporaryDirectory() as td:
        s = _load_with_env(_env_without_config(td))
    assert s.classifier.labels == DEFAULT_LABELS
    assert s.classifier.stable_softmax is False
    assert s.app.port == 8081
    assert s.security.api_key == ""


def test_app_port_out_of_range_raises() -> None:
    with tempfile.TemporaryDirectory() as td:
        env = _env_without_config(td)
        env["APP__PORT"] = "70000"
        with pytest.raises(RuntimeError):
            _ = _load_with_env(env)


def test_env_overrides_happy_paths() -> None:
    with tempfile.TemporaryDirectory() as td:
        env = _env_without_config(td)
        env["CLASSIFIER__MODEL_DIR"] = (Path(td) / "models").as_posix()
        env["CLASSIFIER__ACTIVE_MODEL"] = "veg_v2"
        env["CLASSIFIER__LABELS"] = "a, b ,c"
        env["CLASSIFIER__STABLE_SOFTMAX"] = "true"
        env["CLASSIFIER__MAX_IMAGE_MB"] = "2"
        env["CLASSIFIER__PREDICT_TIMEOUT_SECONDS"] = "1"
        env["SECURITY__API_KEY"] = "k"
        s = _load_with_env(env)
    assert s.classifier.model_dir.as_posix().endswith("models")
    assert s.classifier.active_model == "veg_v2"
    assert s.classifier.labels == ("a", "b", "c")
    assert s.classifier.stable_softmax is True
    assert Limits.from_settings(s).max_bytes == 2 * 1024 * 1024
    assert s.classifier.predict_timeout_seconds == 1
    assert s.security.api_key == "k"


@pytest.mark.parametrize("raw", ["only", "a,,b", "a,b,a"])
def test_env_invalid_labels_raise(raw: str) -> None:
    with tempfile.TemporaryDirectory() as td:
        env = _env_without_config(td)
        env["CLASSIFIER__LABELS"] = raw
        with pytest.raises(RuntimeError):
            _ = _load_with_env(env)


def test_toml_overrides_env() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text(
            """
[app]
port = 9000

[classifier]
active_model = "from_toml"
labels = ["leek", "onion", "garlic"]
stable_softmax = true
max_image_side_px = 1024
""".strip(),
            encoding="utf-8",
        )
        env = os.environ.copy()
        env["VEGETABLE_AI_CONFIG"] = p.as_posix()
        env["CLASSIFIER__ACTIVE_MODEL"] = "from_env"
        s = _load_with_env(env)
    assert s.app.port == 9000
    assert s.classifier.active_model == "from_toml"
    assert s.classifier.labels == ("leek", "onion", "garlic")
    assert s.classifier.stable_softmax is True
    assert Limits.from_settings(s).max_side_px == 1024


def test_toml_labels_must_be_array() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text('[classifier]\nlabels = "carrot"\n', encoding="utf-8")
        env = os.environ.copy()
        env["VEGETABLE_AI_CONFIG"] = p.as_posix()
        with pytest.raises(RuntimeError):
            _ = _load_with_env(env)


def test_security_api_key_enabled_false_disables_key() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text(
            """
[security]
api_key = "secret"
api_key_enabled = false
""".strip(),
            encoding="utf-8",
        )
        env = os.environ.copy()
        env["VEGETABLE_AI_CONFIG"] = p.as_posix()
        s = _load_with_env(env)
    assert s.security.api_key == ""


def test_invalid_toml_raises() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text("[classifier\nlabels = [", encoding="utf-8")
        env = os.environ.copy()
        env["VEGETABLE_AI_CONFIG"] = p.as_posix()
        with pytest.raises(RuntimeError):
            _ = _load_with_env(env)


def test_unknown_app_keys_are_ignored() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text('[app]\ndata_root = "/srv/data"\nthreads = 2\n', encoding="utf-8")
        env = os.environ.copy()
        env["VEGETABLE_AI_CONFIG"] = p.as_posix()
        env["APP__DATA_ROOT"] = "/elsewhere"
        s = _load_with_env(env)
    assert s.app.threads == 2
    assert not hasattr(s.app, "data_root")
