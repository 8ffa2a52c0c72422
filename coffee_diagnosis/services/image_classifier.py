"""
Image classifier providers

Anything with ``classify(image_bytes) -> ImageClassification`` can serve as
the image classifier. Failures raise ImageClassificationError; a
low-confidence result is still a success.
"""

import io
import logging
import threading
import time
from typing import Any, Callable, Optional, Protocol

import numpy as np
import onnxruntime as ort
from PIL import Image, UnidentifiedImageError

from coffee_diagnosis.core.diseases import DISEASE_CLASSES
from coffee_diagnosis.core.errors import ChecksumMismatchError, ImageClassificationError
from coffee_diagnosis.models.diagnosis_models import ModelKind
from coffee_diagnosis.schemas import ImageClassification
from coffee_diagnosis.services.artifact_store import LocalArtifactStore
from coffee_diagnosis.services.model_registry import ModelRegistry

logger = logging.getLogger(__name__)

IMAGE_SIZE = 224
IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


class ImageClassifier(Protocol):
    def classify(self, image_bytes: bytes) -> ImageClassification:
        ...


def preprocess_image(image_bytes: bytes, size: int = IMAGE_SIZE) -> np.ndarray:
    """Decode, resize and normalize an image into a (1, 3, size, size) tensor"""
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = img.convert("RGB").resize((size, size), Image.Resampling.BILINEAR)
    except (UnidentifiedImageError, OSError) as e:
        raise ImageClassificationError(f"Invalid image data: {e}")

    pixels = np.asarray(img, dtype=np.float32) / 255.0
    pixels = (pixels - IMAGENET_MEAN) / IMAGENET_STD
    return pixels.transpose(2, 0, 1)[np.newaxis, ...].astype(np.float32)


def softmax(logits: np.ndarray) -> np.ndarray:
    shifted = np.exp(logits - logits.max())
    return shifted / shifted.sum()


class OnnxImageClassifier:
    """
    CNN classifier served from the active ``image`` ModelVersion.

    The session is loaded lazily and replaced when the registry switches
    the active image model.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        artifact_store: Optional[LocalArtifactStore] = None,
        session_loader: Optional[Callable[[bytes], Any]] = None
    ):
        self.registry = registry
        self.artifact_store = artifact_store or registry.artifact_store
        self._session_loader = session_loader or (
            lambda data: ort.InferenceSession(data, providers=['CPUExecutionProvider'])
        )
        self._session = None
        self._model_version: Optional[str] = None
        self._lock = threading.Lock()
        registry.add_listener(self._on_model_switched)

    @property
    def model_version(self) -> Optional[str]:
        return self._model_version

    def _on_model_switched(self, kind: ModelKind, record):
        if kind != ModelKind.IMAGE:
            return
        with self._lock:
            if not record.is_active and self._model_version != record.version_key:
                return
            self._session = None
            self._model_version = None
        if record.is_active:
            logger.info(f"Image model switched to {record.version_key}; reloading on next request")
        else:
            logger.warning(f"Image model {record.version_key} deactivated")

    def load(self) -> bool:
        record = self.registry.get_active(ModelKind.IMAGE)
        if record is None:
            logger.warning("No active image model registered")
            return False
        try:
            data = self.artifact_store.read_bytes(record.file_path)
            self.artifact_store.verify(record.file_path, data, record.file_checksum)
            session = self._session_loader(data)
        except ChecksumMismatchError as e:
            logger.error(f"Refusing to load image model {record.version_key}: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to load image model {record.version_key}: {e}")
            return False

        with self._lock:
            self._session = session
            self._model_version = record.version_key
        logger.info(f"✅ Image model loaded: {record.version_key}")
        return True

    def classify(self, image_bytes: bytes) -> ImageClassification:
        start_time = time.time()
        with self._lock:
            session = self._session
        if session is None:
            if not self.load():
                raise ImageClassificationError("No image model available")
            with self._lock:
                session = self._session

        tensor = preprocess_image(image_bytes)
        try:
            input_name = session.get_inputs()[0].name
            outputs = session.run(None, {input_name: tensor})
        except Exception as e:
            raise ImageClassificationError(f"Image inference failed: {e}")

        logits = np.asarray(outputs[0], dtype=np.float64).reshape(-1)
        if logits.shape[0] != len(DISEASE_CLASSES):
            raise ImageClassificationError(
                f"Image model returned {logits.shape[0]} outputs, expected {len(DISEASE_CLASSES)}"
            )
        probabilities = softmax(logits)
        best = int(np.argmax(probabilities))

        return ImageClassification(
            label=DISEASE_CLASSES[best],
            confidence=float(probabilities[best]),
            processing_time_ms=int((time.time() - start_time) * 1000)
        )
