"""
Application Configuration
Centralized settings for the diagnosis core
"""

import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./coffee_diagnosis.db")

    # Redis (result cache + request queue). Unset means in-process fallbacks.
    REDIS_URL: Optional[str] = os.getenv("REDIS_URL", None)
    CACHE_TIMEOUT_SECONDS: float = float(os.getenv("CACHE_TIMEOUT_SECONDS", "0.5"))
    PREDICTION_CACHE_TTL_HOURS: int = int(os.getenv("PREDICTION_CACHE_TTL_HOURS", "168"))
    MODEL_STATS_CACHE_TTL_MINUTES: int = int(os.getenv("MODEL_STATS_CACHE_TTL_MINUTES", "15"))

    # ML model artifacts
    ML_MODELS_DIR: str = os.getenv("ML_MODELS_DIR", "./ml_models")
    IMAGE_STORAGE_DIR: str = os.getenv("IMAGE_STORAGE_DIR", "./uploads")
    SYMPTOM_MODEL_NAME: str = os.getenv("SYMPTOM_MODEL_NAME", "coffee_mlp")
    SYMPTOM_FEATURE_WIDTH: int = int(os.getenv("SYMPTOM_FEATURE_WIDTH", "20"))
    INFERENCE_TIMEOUT_SECONDS: float = float(os.getenv("INFERENCE_TIMEOUT_SECONDS", "5.0"))
    INFERENCE_WORKERS: int = int(os.getenv("INFERENCE_WORKERS", "4"))

    # Confidence blending (image classifier vs symptom classifier)
    IMAGE_CONFIDENCE_WEIGHT: float = float(os.getenv("IMAGE_CONFIDENCE_WEIGHT", "0.7"))
    SYMPTOM_CONFIDENCE_WEIGHT: float = float(os.getenv("SYMPTOM_CONFIDENCE_WEIGHT", "0.3"))

    # Retraining
    MIN_RETRAIN_SAMPLES: int = int(os.getenv("MIN_RETRAIN_SAMPLES", "50"))
    RETRAIN_CHECK_INTERVAL_HOURS: int = int(os.getenv("RETRAIN_CHECK_INTERVAL_HOURS", "24"))

    # Request queue
    QUEUE_STREAM_REQUESTS: str = os.getenv("QUEUE_STREAM_REQUESTS", "diagnosis:requests")
    QUEUE_STREAM_RESULTS: str = os.getenv("QUEUE_STREAM_RESULTS", "diagnosis:results")
    QUEUE_CONSUMER_GROUP: str = os.getenv("QUEUE_CONSUMER_GROUP", "diagnosis_workers")
    QUEUE_BLOCK_MS: int = int(os.getenv("QUEUE_BLOCK_MS", "1000"))
    QUEUE_CLAIM_IDLE_MS: int = int(os.getenv("QUEUE_CLAIM_IDLE_MS", "60000"))
    QUEUE_RECLAIM_INTERVAL_SECONDS: float = float(os.getenv("QUEUE_RECLAIM_INTERVAL_SECONDS", "30"))
    QUEUE_RESULT_BUFFER_SIZE: int = int(os.getenv("QUEUE_RESULT_BUFFER_SIZE", "1000"))
    QUEUE_HEALTH_TIMEOUT_SECONDS: float = float(os.getenv("QUEUE_HEALTH_TIMEOUT_SECONDS", "1.0"))
    SERVER_NODE: str = os.getenv("SERVER_NODE", "node-1")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
