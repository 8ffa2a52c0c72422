"""
Pytest configuration for diagnosis core tests
"""

import os
import sys
import threading
from typing import Dict, List, Optional

import numpy as np
import pytest

# Configure the environment BEFORE importing any coffee_diagnosis modules
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("REDIS_URL", None)
os.environ["LOG_LEVEL"] = "DEBUG"

# Add parent directory to path to import coffee_diagnosis modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from coffee_diagnosis.database import Base
from coffee_diagnosis.models.diagnosis_models import (
    LeafImage,
    ModelKind,
    Symptom,
    SymptomObservation,
    TrainingData,
)
from coffee_diagnosis.services.artifact_store import LocalArtifactStore
from coffee_diagnosis.services.model_registry import ModelRegistry
from coffee_diagnosis.services.symptom_ontology import SymptomOntology


# =============================================================================
# Database fixtures
# =============================================================================

@pytest.fixture
def engine():
    """In-memory SQLite shared across threads"""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def artifact_store(tmp_path):
    return LocalArtifactStore(tmp_path / "models")


@pytest.fixture
def registry(session_factory, artifact_store):
    return ModelRegistry(session_factory, artifact_store)


@pytest.fixture
def ontology(session_factory):
    return SymptomOntology(session_factory)


# =============================================================================
# Fakes
# =============================================================================

class FakePredictor:
    """Predictor returning fixed outputs, optionally blocking mid-call"""

    def __init__(
        self,
        outputs,
        input_width: Optional[int] = None,
        started: Optional[threading.Event] = None,
        release: Optional[threading.Event] = None,
        error: Optional[Exception] = None
    ):
        self.outputs = outputs
        self.input_width = input_width
        self.started = started
        self.release = release
        self.error = error
        self.calls: List[np.ndarray] = []
        self.closed = False

    def predict(self, features):
        self.calls.append(np.array(features, copy=True))
        if self.started is not None:
            self.started.set()
        if self.release is not None:
            self.release.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return np.asarray(self.outputs, dtype=np.float64)

    def close(self):
        self.closed = True


class PredictorLoader:
    """Maps artifact bytes to prepared predictors"""

    def __init__(self):
        self.predictors: Dict[bytes, FakePredictor] = {}
        self.loads = 0

    def add(self, data: bytes, predictor: FakePredictor):
        self.predictors[data] = predictor

    def __call__(self, file_path: str, data: bytes):
        self.loads += 1
        if data not in self.predictors:
            raise ValueError(f"Unloadable artifact {file_path}")
        return self.predictors[data]


@pytest.fixture
def predictor_loader():
    return PredictorLoader()


def register_model(
    registry: ModelRegistry,
    name: str,
    version: str,
    data: bytes = b"artifact",
    model_type: ModelKind = ModelKind.SYMPTOM,
    activate: bool = True,
    feature_width: Optional[int] = 2,
    extension: str = ".onnx",
    **kwargs
):
    """Write an artifact file and register it, optionally activating it"""
    file_path = f"{name}_{version}{extension}"
    registry.artifact_store.write_bytes(file_path, data)
    record = registry.register(
        model_name=name,
        version=version,
        model_type=model_type,
        file_path=file_path,
        accuracy=kwargs.pop("accuracy", 0.8),
        training_dataset_version=kwargs.pop("training_dataset_version", "dataset_v1.0"),
        feature_width=feature_width,
        **kwargs
    )
    if activate:
        registry.switch_active(name, version)
    return record


def add_symptoms(session_factory, weights) -> List[int]:
    """Insert active symptoms with the given weights, returning their ids"""
    db = session_factory()
    try:
        symptoms = [
            Symptom(name=f"symptom_{i}", category="Leaf", weight=w)
            for i, w in enumerate(weights)
        ]
        db.add_all(symptoms)
        db.commit()
        return [s.id for s in symptoms]
    finally:
        db.close()


def add_image(session_factory, file_path: str = "leaf.jpg", symptom_ids=()) -> int:
    db = session_factory()
    try:
        image = LeafImage(file_path=file_path, user_id="user-1")
        db.add(image)
        db.flush()
        for symptom_id in symptom_ids:
            db.add(SymptomObservation(image_id=image.id, symptom_id=symptom_id, intensity=3))
        db.commit()
        return image.id
    finally:
        db.close()


def add_training_rows(session_factory, count: int, symptom_ids, labels=("Rust", "Healthy"), validated=True):
    """Create images with observations plus one TrainingData row each"""
    db = session_factory()
    try:
        for i in range(count):
            image = LeafImage(file_path=f"train_{i}.jpg")
            db.add(image)
            db.flush()
            observed = symptom_ids[: (i % len(symptom_ids)) + 1]
            for symptom_id in observed:
                db.add(SymptomObservation(image_id=image.id, symptom_id=symptom_id, intensity=2))
            db.add(TrainingData(
                image_id=image.id,
                label=labels[i % len(labels)],
                source="Original",
                is_validated=validated,
                dataset_split="val" if i % 5 == 0 else "train",
            ))
        db.commit()
    finally:
        db.close()
