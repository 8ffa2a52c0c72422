"""
Diagnosis Database Models
Symptom ontology, leaf images, model versions, predictions, request logs,
user feedback and curated training data
"""

from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Boolean, Text, ForeignKey,
    Index, UniqueConstraint, CheckConstraint, BigInteger
)
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import func

from coffee_diagnosis.database import Base


class ModelKind(str, Enum):
    """Model families served by the registry"""
    IMAGE = "image"
    SYMPTOM = "symptom"
    COMBINED = "combined"


class ApiStatus(str, Enum):
    PROCESSING = "Processing"
    SUCCESS = "Success"
    FAILED = "Failed"
    TIMEOUT = "Timeout"


class TrainingSource(str, Enum):
    ORIGINAL = "Original"
    FEEDBACK = "Feedback"
    MANUAL = "Manual"
    AUGMENTED = "Augmented"


def _check_unit_interval(field_name: str, value):
    if value is not None and not (0.0 <= float(value) <= 1.0):
        raise ValueError(f"{field_name} must be within [0, 1], got {value}")
    return value


class Symptom(Base):
    """Weighted symptom ontology entry"""
    __tablename__ = "symptoms"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False, unique=True)
    description = Column(String(500))
    category = Column(String(50), nullable=False)  # e.g., "Leaf", "Stem"
    is_active = Column(Boolean, default=True, nullable=False)
    weight = Column(Float, default=1.0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    observations = relationship("SymptomObservation", back_populates="symptom")

    __table_args__ = (
        CheckConstraint("weight >= 0 AND weight <= 1", name="ck_symptom_weight_range"),
    )

    @validates("weight")
    def validate_weight(self, key, value):
        return _check_unit_interval("weight", value)


class LeafImage(Base):
    """Uploaded leaf image; bytes live in the file store"""
    __tablename__ = "leaf_images"

    id = Column(Integer, primary_key=True, index=True)
    file_path = Column(String(500), nullable=False)
    image_hash = Column(String(64), index=True)  # MD5 hex of the image bytes
    image_status = Column(String(50), default="Pending")  # Pending, Processed, Failed
    file_size = Column(BigInteger, default=0)
    user_id = Column(String(450))
    uploaded_at = Column(DateTime(timezone=True), server_default=func.now())

    observations = relationship("SymptomObservation", back_populates="image")
    predictions = relationship("Prediction", back_populates="image")


class SymptomObservation(Base):
    """Symptom observed on a specific leaf image"""
    __tablename__ = "symptom_observations"

    id = Column(Integer, primary_key=True, index=True)
    image_id = Column(Integer, ForeignKey("leaf_images.id"), nullable=False, index=True)
    symptom_id = Column(Integer, ForeignKey("symptoms.id"), nullable=False, index=True)
    intensity = Column(Integer, default=3, nullable=False)
    observed_at = Column(DateTime(timezone=True), server_default=func.now())
    observed_by = Column(String(450))
    notes = Column(String(500))

    image = relationship("LeafImage", back_populates="observations")
    symptom = relationship("Symptom", back_populates="observations")

    __table_args__ = (
        UniqueConstraint("image_id", "symptom_id", name="uq_observation_image_symptom"),
        CheckConstraint("intensity >= 1 AND intensity <= 5", name="ck_observation_intensity"),
    )

    @validates("intensity")
    def validate_intensity(self, key, value):
        if value is not None and not (1 <= int(value) <= 5):
            raise ValueError(f"intensity must be within 1..5, got {value}")
        return value


class ModelVersion(Base):
    """Registered model artifact and its lifecycle flags"""
    __tablename__ = "model_versions"

    id = Column(Integer, primary_key=True, index=True)
    model_name = Column(String(100), nullable=False, index=True)  # e.g., "coffee_mlp"
    version = Column(String(50), nullable=False)  # e.g., "v1.0", "v20260101120000123456"
    model_type = Column(String(50), nullable=False, index=True)  # ModelKind value

    # Artifact reference
    file_path = Column(String(500), nullable=False)
    file_checksum = Column(String(64))  # SHA-256 hex
    file_size_bytes = Column(BigInteger, default=0)
    feature_width = Column(Integer)  # input width for symptom models

    # Metrics
    accuracy = Column(Float, nullable=False)
    validation_accuracy = Column(Float)
    test_accuracy = Column(Float)
    training_samples = Column(Integer, default=0)
    validation_samples = Column(Integer, default=0)
    test_samples = Column(Integer, default=0)
    training_dataset_version = Column(String(100), nullable=False)

    # Status and deployment
    is_active = Column(Boolean, default=False, nullable=False)
    is_production = Column(Boolean, default=False, nullable=False)
    deployed_at = Column(DateTime(timezone=True))

    # Audit fields
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_by = Column(String(450))
    notes = Column(String(1000))

    __table_args__ = (
        UniqueConstraint("model_name", "version", name="uq_model_name_version"),
        Index("idx_model_type_active", "model_type", "is_active"),
    )

    @validates("accuracy", "validation_accuracy", "test_accuracy")
    def validate_accuracy(self, key, value):
        return _check_unit_interval(key, value)

    @property
    def version_key(self) -> str:
        return f"{self.model_name}:{self.version}"


class Prediction(Base):
    """Completed diagnosis for a leaf image"""
    __tablename__ = "predictions"

    id = Column(Integer, primary_key=True, index=True)
    image_id = Column(Integer, ForeignKey("leaf_images.id"), nullable=False, index=True)
    disease_name = Column(String(100), nullable=False)
    confidence = Column(Float, nullable=False)
    final_confidence = Column(Float)  # blended with the symptom classifier
    model_version = Column(String(100), nullable=False, index=True)
    severity_level = Column(String(50), default="Unknown")
    treatment_suggestion = Column(Text)
    processing_time_ms = Column(Integer, default=0)
    predicted_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    image = relationship("LeafImage", back_populates="predictions")
    feedbacks = relationship("Feedback", back_populates="prediction")

    __table_args__ = (
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_prediction_confidence"),
        CheckConstraint(
            "final_confidence IS NULL OR (final_confidence >= 0 AND final_confidence <= 1)",
            name="ck_prediction_final_confidence"
        ),
    )

    @validates("confidence", "final_confidence")
    def validate_confidence(self, key, value):
        return _check_unit_interval(key, value)


class PredictionLog(Base):
    """One row per inference attempt, keyed by correlation id"""
    __tablename__ = "prediction_logs"

    id = Column(Integer, primary_key=True, index=True)
    image_id = Column(Integer, ForeignKey("leaf_images.id"), nullable=False, index=True)
    model_type = Column(String(50), nullable=False)
    request_time = Column(DateTime(timezone=True), nullable=False)
    response_time = Column(DateTime(timezone=True))
    api_status = Column(String(50), nullable=False)  # ApiStatus value
    error_message = Column(String(500))
    model_version = Column(String(100), nullable=False)
    request_id = Column(String(100), nullable=False, unique=True, index=True)
    processing_time_ms = Column(Integer, default=0)
    server_node = Column(String(50))


class Feedback(Base):
    """User feedback on a prediction, optionally with a corrected label"""
    __tablename__ = "feedbacks"

    id = Column(Integer, primary_key=True, index=True)
    prediction_id = Column(Integer, ForeignKey("predictions.id"), nullable=False, index=True)
    user_id = Column(String(450), nullable=False)
    feedback_text = Column(String(1000))
    rating = Column(Integer, nullable=False)
    correct_disease_name = Column(String(100))
    is_used_for_training = Column(Boolean, default=False, nullable=False)
    feedback_type = Column(String(50), default="Manual")  # Manual, Auto, Expert
    feedback_date = Column(DateTime(timezone=True), server_default=func.now())

    prediction = relationship("Prediction", back_populates="feedbacks")

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_feedback_rating"),
        Index("idx_feedback_training", "is_used_for_training"),
    )

    @validates("rating")
    def validate_rating(self, key, value):
        if value is None or not (1 <= int(value) <= 5):
            raise ValueError(f"rating must be within 1..5, got {value}")
        return value


class TrainingData(Base):
    """Labelled image curated for training"""
    __tablename__ = "training_data"

    id = Column(Integer, primary_key=True, index=True)
    image_id = Column(Integer, ForeignKey("leaf_images.id"), nullable=False, index=True)
    label = Column(String(100), nullable=False)
    source = Column(String(50), nullable=False)  # TrainingSource value
    is_validated = Column(Boolean, default=False, nullable=False)
    dataset_split = Column(String(50), default="train")  # train, val, test
    is_used_for_training = Column(Boolean, default=False, nullable=False)
    original_prediction = Column(String(100))
    original_confidence = Column(Float)
    validated_by = Column(String(450))
    feedback_id = Column(Integer, ForeignKey("feedbacks.id"), unique=True)
    notes = Column(String(200))
    quality = Column(String(50), default="Unknown")  # High, Medium, Low, Unknown
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    image = relationship("LeafImage")
    source_feedback = relationship("Feedback")

    __table_args__ = (
        Index("idx_training_validated", "is_validated", "is_used_for_training"),
    )
