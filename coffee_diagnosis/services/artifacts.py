"""
Loaded model artifacts

An ArtifactHandle wraps one immutable, loaded predictor. Runtimes never
mutate a handle; a model switch installs a new handle and retires the old
one, which is closed once its last in-flight caller releases it.
"""

import io
import logging
import threading
from pathlib import Path
from typing import Any, Callable, List, Optional

import joblib
import numpy as np
import onnxruntime as ort

from coffee_diagnosis.core.diseases import DISEASE_CLASSES
from coffee_diagnosis.core.errors import ArtifactError

logger = logging.getLogger(__name__)


class OnnxPredictor:
    """Runs an onnxruntime session on a single feature row"""

    def __init__(self, session: Any):
        self.session = session
        model_input = session.get_inputs()[0]
        self.input_name = model_input.name
        shape = list(getattr(model_input, "shape", None) or [])
        # Static width when the exported graph declares one
        self.input_width: Optional[int] = shape[-1] if shape and isinstance(shape[-1], int) else None

    def predict(self, features: np.ndarray) -> np.ndarray:
        batch = features.reshape(1, -1).astype(np.float32)
        outputs = self.session.run(None, {self.input_name: batch})
        return np.asarray(outputs[0], dtype=np.float64).reshape(-1)

    def close(self):
        self.session = None


class SklearnPredictor:
    """Runs predict_proba on a fitted estimator, reordered to DISEASE_CLASSES"""

    def __init__(self, estimator: Any):
        self.estimator = estimator
        self.input_width: Optional[int] = getattr(estimator, "n_features_in_", None)
        classes = [str(c) for c in getattr(estimator, "classes_", DISEASE_CLASSES)]
        self._positions = [classes.index(c) if c in classes else None for c in DISEASE_CLASSES]

    def predict(self, features: np.ndarray) -> np.ndarray:
        proba = np.asarray(self.estimator.predict_proba(features.reshape(1, -1))[0], dtype=np.float64)
        return np.array([proba[p] if p is not None else 0.0 for p in self._positions])

    def close(self):
        self.estimator = None


def load_predictor(file_path: str, data: bytes, providers: Optional[List[str]] = None):
    """
    Build a predictor from artifact bytes, chosen by file extension.

    Raises:
        ArtifactError: unsupported format
    """
    suffix = Path(file_path).suffix.lower()
    if suffix == ".onnx":
        providers = providers or ['CPUExecutionProvider']
        return OnnxPredictor(ort.InferenceSession(data, providers=providers))
    if suffix in (".joblib", ".pkl"):
        return SklearnPredictor(joblib.load(io.BytesIO(data)))
    raise ArtifactError(f"Unsupported artifact format for inference: {suffix or file_path}")


class ArtifactHandle:
    """
    Reference-counted handle on a loaded predictor.

    acquire() fails once the handle is retired, so a swapped-out artifact
    only serves callers that acquired it before the swap.
    """

    def __init__(
        self,
        model_version: str,
        predictor: Any,
        feature_width: int,
        on_close: Optional[Callable[["ArtifactHandle"], None]] = None
    ):
        self.model_version = model_version
        self.predictor = predictor
        self.feature_width = feature_width
        self._on_close = on_close
        self._lock = threading.Lock()
        self._refcount = 0
        self._retired = False
        self._closed = False

    @property
    def refcount(self) -> int:
        return self._refcount

    @property
    def is_retired(self) -> bool:
        return self._retired

    @property
    def is_closed(self) -> bool:
        return self._closed

    def acquire(self) -> bool:
        with self._lock:
            if self._retired:
                return False
            self._refcount += 1
            return True

    def release(self):
        with self._lock:
            self._refcount -= 1
            should_close = self._retired and self._refcount <= 0
        if should_close:
            self._close()

    def retire(self):
        with self._lock:
            self._retired = True
            should_close = self._refcount <= 0
        if should_close:
            self._close()

    def predict(self, features: np.ndarray) -> np.ndarray:
        return self.predictor.predict(features)

    def _close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        close = getattr(self.predictor, "close", None)
        if callable(close):
            close()
        logger.info(f"Released artifact {self.model_version}")
        if self._on_close:
            self._on_close(self)
