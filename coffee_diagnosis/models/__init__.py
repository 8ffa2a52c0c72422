from coffee_diagnosis.models.diagnosis_models import (
    ModelKind,
    ApiStatus,
    TrainingSource,
    Symptom,
    LeafImage,
    SymptomObservation,
    ModelVersion,
    Prediction,
    PredictionLog,
    Feedback,
    TrainingData,
)

__all__ = [
    "ModelKind",
    "ApiStatus",
    "TrainingSource",
    "Symptom",
    "LeafImage",
    "SymptomObservation",
    "ModelVersion",
    "Prediction",
    "PredictionLog",
    "Feedback",
    "TrainingData",
]
