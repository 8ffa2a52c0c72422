"""
Pydantic schemas for diagnosis results, queue messages and model statistics.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from coffee_diagnosis.models.diagnosis_models import ApiStatus


class ImageClassification(BaseModel):
    label: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    processing_time_ms: int = 0


class SymptomPrediction(BaseModel):
    disease_name: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    distribution: Dict[str, float]
    model_version: Optional[str] = None
    symptom_count: int = 0
    is_reliable: bool = False


class PredictionResult(BaseModel):
    disease_name: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    final_confidence: float = Field(..., ge=0.0, le=1.0)
    symptom_confidence: Optional[float] = None
    severity_level: str
    treatment_suggestion: str
    model_version: str
    processing_time_ms: int = 0
    predicted_at: datetime = Field(default_factory=datetime.utcnow)
    image_hash: Optional[str] = None
    prediction_id: Optional[int] = None


class ModelStatistics(BaseModel):
    model_name: str
    version: str
    model_type: str
    accuracy: float
    validation_accuracy: Optional[float] = None
    test_accuracy: Optional[float] = None
    is_active: bool
    is_production: bool
    deployed_at: Optional[datetime] = None
    total_predictions: int = 0
    average_confidence: float = 0.0
    average_rating: float = 0.0


class ModelVersionSummary(BaseModel):
    id: int
    model_name: str
    version: str
    model_type: str
    accuracy: float
    feature_width: Optional[int] = None
    is_active: bool
    is_production: bool
    created_at: Optional[datetime] = None
    deployed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ModelVersionPage(BaseModel):
    items: List[ModelVersionSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


class DiagnosisRequest(BaseModel):
    correlation_id: str
    image_id: int
    image_path: str
    symptom_ids: List[int] = Field(default_factory=list)
    submitted_at: datetime = Field(default_factory=datetime.utcnow)


class DiagnosisReceipt(BaseModel):
    correlation_id: str
    status: str = "Queued"
    submitted_at: datetime


class DiagnosisResultMessage(BaseModel):
    correlation_id: str
    status: ApiStatus
    result: Optional[PredictionResult] = None
    error: Optional[Dict[str, Any]] = None
    completed_at: datetime = Field(default_factory=datetime.utcnow)
