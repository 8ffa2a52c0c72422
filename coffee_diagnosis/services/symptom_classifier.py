"""
Symptom Classifier Runtime
==========================

Predicts a disease distribution from observed symptoms using the active
symptom ModelVersion.

Features:
- Lazy loading through the model registry and artifact store
- SHA-256 verification before an artifact is loaded
- Copy-and-swap on model switch (in-flight calls finish on their handle)
- Explicit inference outcomes; predict_* map them to neutral fallbacks
- Thread-pool inference with a caller-supplied timeout
- Retraining from validated training data (scikit-learn MLP + joblib)
"""

import asyncio
import io
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

import joblib
import numpy as np
from sklearn.metrics import accuracy_score
from sklearn.neural_network import MLPClassifier
from sqlalchemy import exists
from sqlalchemy.orm import Session

from coffee_diagnosis.config import settings
from coffee_diagnosis.core.diseases import DISEASE_CLASSES
from coffee_diagnosis.core.errors import ChecksumMismatchError
from coffee_diagnosis.core.logging import log_audit
from coffee_diagnosis.database import SessionLocal
from coffee_diagnosis.models.diagnosis_models import (
    ModelKind,
    ModelVersion,
    SymptomObservation,
    TrainingData,
)
from coffee_diagnosis.schemas import SymptomPrediction
from coffee_diagnosis.services.artifact_store import LocalArtifactStore
from coffee_diagnosis.services.artifacts import ArtifactHandle, load_predictor
from coffee_diagnosis.services.feature_encoder import encode, encode_batch
from coffee_diagnosis.services.model_registry import ModelRegistry
from coffee_diagnosis.services.symptom_ontology import SymptomOntology

logger = logging.getLogger(__name__)

NEUTRAL_CONFIDENCE = 0.5
MIN_RELIABLE_SYMPTOMS = 3


# ============================================================================
# Inference outcomes
# ============================================================================

class InferenceStatus(str, Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"
    FAULTED = "faulted"
    TIMED_OUT = "timed_out"


@dataclass
class InferenceOutcome:
    """Result of one inference attempt"""
    status: InferenceStatus
    distribution: Optional[Dict[str, float]] = None
    model_version: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, distribution: Dict[str, float], model_version: str) -> "InferenceOutcome":
        return cls(InferenceStatus.OK, distribution=distribution, model_version=model_version)

    @classmethod
    def unavailable(cls, reason: str = "No symptom model loaded") -> "InferenceOutcome":
        return cls(InferenceStatus.UNAVAILABLE, reason=reason)

    @classmethod
    def faulted(cls, reason: str, model_version: Optional[str] = None) -> "InferenceOutcome":
        return cls(InferenceStatus.FAULTED, reason=reason, model_version=model_version)

    @classmethod
    def timed_out(cls, timeout: float) -> "InferenceOutcome":
        return cls(InferenceStatus.TIMED_OUT, reason=f"Inference exceeded {timeout}s")

    @property
    def is_ok(self) -> bool:
        return self.status == InferenceStatus.OK

    @property
    def top_confidence(self) -> float:
        if not self.is_ok:
            return NEUTRAL_CONFIDENCE
        return max(self.distribution.values())

    @property
    def top_label(self) -> Optional[str]:
        if not self.is_ok:
            return None
        return max(self.distribution, key=self.distribution.get)


def uniform_distribution() -> Dict[str, float]:
    share = 1.0 / len(DISEASE_CLASSES)
    return {label: share for label in DISEASE_CLASSES}


def to_distribution(raw: Iterable[float]) -> Dict[str, float]:
    """
    Map raw model output onto DISEASE_CLASSES.

    Outputs that already look like probabilities are renormalized;
    anything else is treated as logits.
    """
    values = np.asarray(list(raw), dtype=np.float64).reshape(-1)
    if values.shape[0] != len(DISEASE_CLASSES):
        raise ValueError(f"Expected {len(DISEASE_CLASSES)} class outputs, got {values.shape[0]}")
    if not np.all(np.isfinite(values)):
        raise ValueError("Model output contains non-finite values")

    total = values.sum()
    if np.all((values >= 0.0) & (values <= 1.0)) and total > 0:
        probabilities = values / total
    else:
        shifted = np.exp(values - values.max())
        probabilities = shifted / shifted.sum()
    return {label: float(p) for label, p in zip(DISEASE_CLASSES, probabilities)}


# ============================================================================
# Training
# ============================================================================

@dataclass
class TrainingOutcome:
    estimator: Any
    accuracy: float
    validation_accuracy: Optional[float] = None
    notes: Dict[str, Any] = field(default_factory=dict)


Trainer = Callable[[np.ndarray, List[str], np.ndarray, List[str]], TrainingOutcome]


def train_mlp(
    X_train: np.ndarray,
    y_train: List[str],
    X_val: np.ndarray,
    y_val: List[str]
) -> TrainingOutcome:
    """Fit a small MLP on symptom features and score it"""
    model = MLPClassifier(
        hidden_layer_sizes=(64, 32),
        activation="relu",
        max_iter=500,
        random_state=42
    )
    model.fit(X_train, y_train)
    accuracy = float(accuracy_score(y_train, model.predict(X_train)))
    validation_accuracy = None
    if len(y_val) > 0:
        validation_accuracy = float(accuracy_score(y_val, model.predict(X_val)))
    return TrainingOutcome(estimator=model, accuracy=accuracy, validation_accuracy=validation_accuracy)


# ============================================================================
# Runtime
# ============================================================================

class SymptomClassifier:
    """
    Serving runtime for the active symptom model.

    Unloaded until an active symptom ModelVersion loads successfully.
    While unloaded, predict_top returns 0.5 and predict_distribution
    returns a uniform distribution.
    """

    def __init__(
        self,
        registry: Optional[ModelRegistry] = None,
        ontology: Optional[SymptomOntology] = None,
        artifact_store: Optional[LocalArtifactStore] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        predictor_loader: Callable[[str, bytes], Any] = load_predictor,
        trainer: Trainer = train_mlp,
        default_feature_width: Optional[int] = None,
        min_retrain_samples: Optional[int] = None,
        executor: Optional[ThreadPoolExecutor] = None
    ):
        self._session_factory = session_factory or SessionLocal
        self.artifact_store = artifact_store or LocalArtifactStore()
        self.registry = registry or ModelRegistry(self._session_factory, self.artifact_store)
        self.ontology = ontology or SymptomOntology(self._session_factory)
        self._predictor_loader = predictor_loader
        self._trainer = trainer
        self.default_feature_width = default_feature_width or settings.SYMPTOM_FEATURE_WIDTH
        self.min_retrain_samples = (
            settings.MIN_RETRAIN_SAMPLES if min_retrain_samples is None else min_retrain_samples
        )
        self._executor = executor or ThreadPoolExecutor(max_workers=settings.INFERENCE_WORKERS)

        self._handle: Optional[ArtifactHandle] = None
        self._swap_lock = threading.Lock()
        self._load_lock = threading.Lock()

        self.registry.add_listener(self.on_model_switched)

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None

    @property
    def model_version(self) -> Optional[str]:
        handle = self._handle
        return handle.model_version if handle else None

    # ------------------------------------------------------------------------
    # Loading / swapping
    # ------------------------------------------------------------------------

    def load(self) -> bool:
        """Load the active symptom model; False leaves the runtime Unloaded"""
        with self._load_lock:
            record = self.registry.get_active(ModelKind.SYMPTOM)
            if record is None:
                logger.warning("No active symptom model registered")
                return False
            handle = self._build_handle(record)
            if handle is None:
                return False
            self._swap(handle)
            return True

    def on_model_switched(self, kind: ModelKind, record: ModelVersion):
        """Registry listener: install the newly activated symptom model, or drop a deactivated one"""
        if kind != ModelKind.SYMPTOM:
            return
        with self._load_lock:
            if not record.is_active:
                if self.model_version == record.version_key:
                    self._swap(None)
                    logger.warning(f"Symptom model {record.version_key} deactivated; serving fallbacks")
                return
            handle = self._build_handle(record)
            # The previous artifact is no longer active either way
            self._swap(handle)
        if handle is None:
            logger.error(f"Switched to {record.version_key} but it failed to load; serving fallbacks")

    def unload(self):
        with self._load_lock:
            self._swap(None)

    def _swap(self, handle: Optional[ArtifactHandle]):
        with self._swap_lock:
            previous = self._handle
            self._handle = handle
        if previous is not None:
            previous.retire()
        if handle is not None:
            logger.info(f"✅ Symptom model loaded: {handle.model_version} (width={handle.feature_width})")

    def _build_handle(self, record: ModelVersion) -> Optional[ArtifactHandle]:
        version_key = record.version_key
        if not self.artifact_store.exists(record.file_path):
            logger.error(f"Artifact for {version_key} not found at {record.file_path}")
            return None
        try:
            data = self.artifact_store.read_bytes(record.file_path)
            self.artifact_store.verify(record.file_path, data, record.file_checksum)
        except ChecksumMismatchError as e:
            logger.error(f"Refusing to load {version_key}: {e} (expected {e.expected}, got {e.actual})")
            return None
        except OSError as e:
            logger.error(f"Failed to read artifact for {version_key}: {e}")
            return None

        try:
            predictor = self._predictor_loader(record.file_path, data)
        except Exception as e:
            logger.error(f"Failed to load model {version_key}: {e}")
            return None

        artifact_width = getattr(predictor, "input_width", None)
        width = record.feature_width or artifact_width or self.default_feature_width
        if record.feature_width and artifact_width and record.feature_width != artifact_width:
            logger.error(
                f"Feature width mismatch for {version_key}: registered {record.feature_width}, "
                f"artifact expects {artifact_width}"
            )
            return None
        if width <= 0:
            logger.error(f"Invalid feature width {width} for {version_key}")
            return None

        return ArtifactHandle(version_key, predictor, int(width))

    def _acquire(self) -> Optional[ArtifactHandle]:
        if self._handle is None:
            self.load()
        with self._swap_lock:
            handle = self._handle
            if handle is None or not handle.acquire():
                return None
            return handle

    # ------------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------------

    def infer(self, symptom_ids: Iterable[int]) -> InferenceOutcome:
        """Run one inference and report the outcome without raising"""
        handle = self._acquire()
        if handle is None:
            return InferenceOutcome.unavailable()
        try:
            features = encode(symptom_ids, self.ontology.load_active(), handle.feature_width)
            raw = handle.predict(features)
            return InferenceOutcome.ok(to_distribution(raw), handle.model_version)
        except Exception as e:
            logger.error(f"Symptom inference failed on {handle.model_version}: {e}")
            return InferenceOutcome.faulted(str(e), handle.model_version)
        finally:
            handle.release()

    async def infer_async(self, symptom_ids: Iterable[int], timeout: Optional[float] = None) -> InferenceOutcome:
        """Run inference on the thread pool, bounded by ``timeout`` seconds"""
        timeout = settings.INFERENCE_TIMEOUT_SECONDS if timeout is None else timeout
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._executor, self.infer, list(symptom_ids)),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Symptom inference timed out after {timeout}s")
            return InferenceOutcome.timed_out(timeout)

    @staticmethod
    def distribution_for(outcome: InferenceOutcome) -> Dict[str, float]:
        return outcome.distribution if outcome.is_ok else uniform_distribution()

    def predict_top(self, symptom_ids: Iterable[int]) -> float:
        """Highest class probability, 0.5 when no usable model"""
        return self.infer(symptom_ids).top_confidence

    def predict_distribution(self, symptom_ids: Iterable[int]) -> Dict[str, float]:
        """Distribution over DISEASE_CLASSES, uniform when no usable model"""
        return self.distribution_for(self.infer(symptom_ids))

    def predict_detailed(self, symptom_ids: Iterable[int]) -> SymptomPrediction:
        symptom_ids = list(symptom_ids)
        outcome = self.infer(symptom_ids)
        distribution = self.distribution_for(outcome)
        if outcome.is_ok:
            disease_name = outcome.top_label
        else:
            disease_name = "Unknown"
        return SymptomPrediction(
            disease_name=disease_name,
            confidence=outcome.top_confidence,
            distribution=distribution,
            model_version=outcome.model_version,
            symptom_count=len(symptom_ids),
            is_reliable=outcome.is_ok and len(symptom_ids) >= MIN_RELIABLE_SYMPTOMS,
        )

    def is_available(self) -> bool:
        if self._handle is None:
            self.load()
        return self._handle is not None

    # ------------------------------------------------------------------------
    # Retraining
    # ------------------------------------------------------------------------

    def count_training_samples(self) -> int:
        """Validated training rows whose image has at least one observation"""
        db = self._session_factory()
        try:
            return self._qualifying_query(db).count()
        finally:
            db.close()

    @staticmethod
    def _qualifying_query(db: Session):
        has_observation = exists().where(SymptomObservation.image_id == TrainingData.image_id)
        return db.query(TrainingData).filter(
            TrainingData.is_validated.is_(True),
            TrainingData.label.in_(DISEASE_CLASSES),
            has_observation
        )

    def retrain(self, actor_id: Optional[str] = None) -> Optional[ModelVersion]:
        """
        Train a new symptom model from validated training data.

        The new version is registered inactive with feature_width equal
        to the current ontology size. Returns None below the sample threshold.
        """
        db = self._session_factory()
        try:
            rows = self._qualifying_query(db).all()
            if len(rows) < self.min_retrain_samples:
                logger.warning(
                    f"Not enough data to retrain symptom model "
                    f"(need at least {self.min_retrain_samples} samples, have {len(rows)})"
                )
                return None

            image_ids = {r.image_id for r in rows}
            observations: Dict[int, List[int]] = {}
            for image_id, symptom_id in db.query(
                SymptomObservation.image_id, SymptomObservation.symptom_id
            ).filter(SymptomObservation.image_id.in_(image_ids)).all():
                observations.setdefault(image_id, []).append(symptom_id)

            ontology = self.ontology.load_active()
            width = max(len(ontology), 1)
            train_rows = [r for r in rows if (r.dataset_split or "train") == "train"]
            val_rows = [r for r in rows if (r.dataset_split or "train") != "train"]
            if not train_rows:
                train_rows, val_rows = rows, []

            X_train = encode_batch([observations[r.image_id] for r in train_rows], ontology, width)
            X_val = encode_batch([observations[r.image_id] for r in val_rows], ontology, width)
            y_train = [r.label for r in train_rows]
            y_val = [r.label for r in val_rows]
            used_ids = [r.id for r in rows]
        finally:
            db.close()

        logger.info(f"Training symptom model on {len(y_train)} samples ({len(y_val)} validation), width={width}")
        outcome = self._trainer(X_train, y_train, X_val, y_val)

        version = datetime.utcnow().strftime("v%Y%m%d%H%M%S%f")
        model_name = settings.SYMPTOM_MODEL_NAME
        file_path = f"{model_name}_{version}.joblib"
        buffer = io.BytesIO()
        joblib.dump(outcome.estimator, buffer)
        data = buffer.getvalue()
        checksum = self.artifact_store.write_bytes(file_path, data)

        record = self.registry.register(
            model_name=model_name,
            version=version,
            model_type=ModelKind.SYMPTOM,
            file_path=file_path,
            accuracy=outcome.accuracy,
            validation_accuracy=outcome.validation_accuracy,
            training_samples=len(y_train),
            validation_samples=len(y_val),
            training_dataset_version=f"training_data_{len(used_ids)}",
            file_checksum=checksum,
            file_size_bytes=len(data),
            feature_width=width,
            created_by=actor_id or "retraining",
            notes=f"MLP trained from {len(used_ids)} symptom samples",
        )

        db = self._session_factory()
        try:
            db.query(TrainingData).filter(TrainingData.id.in_(used_ids)).update(
                {TrainingData.is_used_for_training: True}, synchronize_session=False
            )
            db.commit()
        finally:
            db.close()

        log_audit("symptom_model_retrained", actor_id, {
            "model": record.version_key,
            "samples": len(used_ids),
            "accuracy": outcome.accuracy,
        })
        return record

    def shutdown(self):
        self._executor.shutdown(wait=False)
