from __future__ import annotations

import os
import pickle
import threading
import zipfile
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

import torch
from torch import Tensor

from ..config import Settings
from ..errors import InferenceError, ModelNotReadyError
from ..logging import get_logger, log_event
from .manifest import ModelManifest
from .postprocess import argmax, softmax
from .types import ModelState, PredictOutput

MANIFEST_NAME: Final[str] = "manifest.json"
MODEL_NAME: Final[str] = "model.pt"

_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    KeyError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)


class ModelLoadError(Exception):
    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> object: ...


class InferenceEngine:
    """Readiness-checked model handle with a bounded inference thread pool.

    State moves ``unloaded -> loading -> ready | failed``. The model and its
    manifest are only swapped under the lock, and each prediction works on a
    snapshot taken under the same lock. Predicting in any state other than
    ``ready`` raises ``ModelNotReadyError``.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._labels = settings.classifier.labels
        self._logger = get_logger()
        self._pool = _make_pool(settings)
        self._lock = threading.RLock()
        self._state = ModelState.unloaded
        self._model: TorchModel | None = None
        self._manifest: ModelManifest | None = None
        self._failure: str | None = None
        torch.set_num_threads(1)

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is ModelState.ready

    @property
    def model_id(self) -> str | None:
        man = self._manifest
        return man.model_id if man is not None else None

    @property
    def manifest(self) -> ModelManifest | None:
        return self._manifest

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    @property
    def failure_reason(self) -> str | None:
        return self._failure

    @property
    def artifacts_dir(self) -> Path:
        c = self._settings.classifier
        return c.model_dir / c.active_model

    def load(self) -> ModelState:
        """Load the active model artifacts.

        A failed first load leaves the engine ``failed``; a failed reload keeps
        serving the model that was already ready.
        """
        with self._lock:
            was_ready = self._state is ModelState.ready
            if not was_ready:
                self._state = ModelState.loading
        try:
            model, manifest = self._load_artifacts(self.artifacts_dir)
        except ModelLoadError as exc:
            log_event("model_load_failed", {"reason": exc.reason, "state": self._state.value})
            self._logger.warning("model_load_error %s", exc)
            with self._lock:
                self._failure = exc.reason
                if not was_ready:
                    self._state = ModelState.failed
            return self._state
        with self._lock:
            self._model = model
            self._manifest = manifest
            self._failure = None
            self._state = ModelState.ready
        log_event("model_loaded", {"model_id": manifest.model_id, "state": "ready"})
        return ModelState.ready

    def submit_predict(self, preprocessed: Tensor) -> Future[PredictOutput]:
        return self._pool.submit(self._predict_impl, preprocessed)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _snapshot(self) -> tuple[ModelState, TorchModel | None, ModelManifest | None]:
        with self._lock:
            return self._state, self._model, self._manifest

    def _predict_impl(self, preprocessed: Tensor) -> PredictOutput:
        state, model_obj, man = self._snapshot()
        if state is not ModelState.ready or model_obj is None or man is None:
            raise ModelNotReadyError(f"Model not loaded (state={state.value})")

        batch = _as_batch(preprocessed)
        try:
            with torch.no_grad():
                raw = model_obj(batch)
        except (RuntimeError, ValueError, TypeError, IndexError) as exc:
            raise InferenceError(f"model invocation failed: {exc}") from exc

        scores = _raw_scores(raw)
        if len(scores) != len(self._labels):
            raise InferenceError(
                f"model returned {len(scores)} scores for {len(self._labels)} labels"
            )
        probs = softmax(scores, stable=self._settings.classifier.stable_softmax)
        top_idx = argmax(probs)
        return PredictOutput(
            predicted_class=top_idx,
            confidence=float(probs[top_idx]),
            probs=probs,
            model_id=man.model_id,
        )

    def _load_artifacts(self, model_dir: Path) -> tuple[TorchModel, ModelManifest]:
        manifest_path = model_dir / MANIFEST_NAME
        model_path = model_dir / MODEL_NAME
        if not (manifest_path.exists() and model_path.exists()):
            raise ModelLoadError("artifacts_missing", model_dir.as_posix())
        try:
            manifest = ModelManifest.from_path(manifest_path)
        except (OSError, ValueError) as exc:
            raise ModelLoadError("manifest_invalid", str(exc)) from exc

        from ..preprocess import preprocess_signature

        if manifest.preprocess_hash != preprocess_signature():
            raise ModelLoadError("preprocess_mismatch", manifest.preprocess_hash)
        if manifest.n_classes != len(self._labels):
            raise ModelLoadError(
                "class_count_mismatch", f"{manifest.n_classes}!={len(self._labels)}"
            )
        if manifest.labels is not None and manifest.labels != self._labels:
            raise ModelLoadError("label_mismatch", ",".join(manifest.labels))

        try:
            if manifest.format == "torchscript":
                model = _load_torchscript(model_path)
            else:
                model = _load_state_dict_model(model_path, manifest.arch, manifest.n_classes)
        except _LOAD_ERRORS as exc:
            raise ModelLoadError("weights_invalid", str(exc)) from exc
        model.eval()
        return model, manifest


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    if settings.app.threads == 0:
        size = min(8, os.cpu_count() or 1)
    else:
        size = settings.app.threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="predict")


def _as_batch(x: Tensor) -> Tensor:
    t = x
    if t.ndim == 3:
        t = t.unsqueeze(0)
    if t.ndim != 4 or int(t.shape[0]) != 1:
        raise InferenceError(f"expected a single-image batch, got shape {tuple(t.shape)}")
    return t.to(dtype=torch.float32)


def _raw_scores(raw: object) -> list[float]:
    out = raw
    if isinstance(out, (tuple, list)) and out:
        out = out[0]
    if isinstance(out, dict) and "logits" in out:
        out = out["logits"]
    if not isinstance(out, Tensor):
        raise InferenceError(f"model returned {type(raw).__name__}, expected a tensor")
    if out.ndim == 2 and int(out.shape[0]) != 1:
        raise InferenceError("model returned more than one row of scores")
    if out.ndim not in (1, 2):
        raise InferenceError(f"unexpected score tensor shape {tuple(out.shape)}")
    flat = out.detach().to(dtype=torch.float64).reshape(-1)
    return [float(v) for v in flat.tolist()]


if TYPE_CHECKING:

    def _build_model(arch: str, n_classes: int) -> TorchModel: ...
else:

    def _build_model(arch: str, n_classes: int) -> TorchModel:
        import importlib

        if arch != "resnet18":
            raise ValueError(f"unsupported arch: {arch}")
        tv_models = importlib.import_module("torchvision.models")
        fn_obj = getattr(tv_models, "resnet18", None)
        if not callable(fn_obj):
            raise RuntimeError("torchvision.models.resnet18 is not callable")
        return fn_obj(weights=None, num_classes=int(n_classes))


if TYPE_CHECKING:

    def build_fresh_state_dict(arch: str, n_classes: int) -> dict[str, Tensor]: ...
else:

    def build_fresh_state_dict(arch: str, n_classes: int) -> dict[str, Tensor]:
        m = _build_model(arch=arch, n_classes=n_classes)
        sd = m.state_dict()
        return {k: v for k, v in sd.items() if isinstance(k, str) and torch.is_tensor(v)}


if TYPE_CHECKING:

    def _load_torchscript(path: Path) -> TorchModel: ...
else:

    def _load_torchscript(path: Path) -> TorchModel:
        return torch.jit.load(path.as_posix(), map_location=torch.device("cpu"))


def _load_state_dict_model(path: Path, arch: str, n_classes: int) -> TorchModel:
    sd = _load_state_dict_file(path)
    _validate_state_dict(sd, n_classes)
    model = _build_model(arch=arch, n_classes=n_classes)
    load = getattr(model, "load_state_dict", None)
    if not callable(load):
        raise TypeError("model does not accept a state dict")
    load(sd)
    return model


if TYPE_CHECKING:

    def _load_state_dict_file(path: Path) -> dict[str, Tensor]: ...
else:

    def _load_state_dict_file(path: Path) -> dict[str, Tensor]:
        obj = torch.load(path.as_posix(), map_location=torch.device("cpu"), weights_only=True)
        sd_obj = obj["state_dict"] if isinstance(obj, dict) and "state_dict" in obj else obj
        if not isinstance(sd_obj, dict):
            raise ValueError("state dict file did not contain a dict")
        out: dict[str, Tensor] = {}
        for k, v in sd_obj.items():
            if isinstance(k, str) and torch.is_tensor(v):
                out[k] = v
            else:
                raise ValueError("invalid state dict entry")
        return out


def _validate_state_dict(sd: dict[str, Tensor], n_classes: int) -> None:
    w = sd.get("fc.weight")
    b = sd.get("fc.bias")
    if w is None or b is None:
        raise ValueError("missing classifier weights in state dict")
    if w.ndim != 2 or b.ndim != 1:
        raise ValueError("invalid classifier tensor dimensions")
    if int(w.shape[0]) != n_classes or int(b.shape[0]) != n_classes:
        raise ValueError("classifier head size does not match n_classes")
    conv1 = sd.get("conv1.weight")
    if conv1 is None or conv1.ndim != 4 or int(conv1.shape[1]) != 3:
        raise ValueError("missing or invalid 3-channel conv1.weight")
