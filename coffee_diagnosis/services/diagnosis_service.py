"""
Diagnosis Service
Runs one diagnosis request end to end and records its PredictionLog row

Pipeline:
1. Open (or resume) the PredictionLog row for the correlation id
2. Load image bytes and consult the result cache
3. Image classifier, then symptom classifier, both with timeouts
4. Blend confidences, persist the Prediction, cache the result
5. Close the log row exactly once
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coffee_diagnosis.config import settings
from coffee_diagnosis.core.errors import ErrorSanitizer, ImageClassificationError
from coffee_diagnosis.database import SessionLocal
from coffee_diagnosis.models.diagnosis_models import (
    ApiStatus,
    LeafImage,
    ModelKind,
    Prediction,
    PredictionLog,
)
from coffee_diagnosis.schemas import (
    DiagnosisRequest,
    DiagnosisResultMessage,
    ImageClassification,
    PredictionResult,
)
from coffee_diagnosis.services.artifact_store import LocalArtifactStore
from coffee_diagnosis.services.image_classifier import ImageClassifier
from coffee_diagnosis.services.prediction_combiner import PredictionCombiner
from coffee_diagnosis.services.result_cache import ResultCache, image_fingerprint
from coffee_diagnosis.services.symptom_classifier import InferenceStatus, SymptomClassifier

logger = logging.getLogger(__name__)


class DiagnosisService:
    """Orchestrates classifiers, combiner, cache and persistence for one request"""

    def __init__(
        self,
        image_classifier: ImageClassifier,
        symptom_classifier: SymptomClassifier,
        combiner: Optional[PredictionCombiner] = None,
        cache: Optional[ResultCache] = None,
        image_store: Optional[LocalArtifactStore] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        inference_timeout: Optional[float] = None,
        server_node: Optional[str] = None
    ):
        self.image_classifier = image_classifier
        self.symptom_classifier = symptom_classifier
        self.combiner = combiner or PredictionCombiner()
        self.cache = cache or ResultCache()
        self.image_store = image_store or LocalArtifactStore(settings.IMAGE_STORAGE_DIR)
        self._session_factory = session_factory or SessionLocal
        self.inference_timeout = (
            settings.INFERENCE_TIMEOUT_SECONDS if inference_timeout is None else inference_timeout
        )
        self.server_node = server_node or settings.SERVER_NODE
        self._executor = ThreadPoolExecutor(max_workers=settings.INFERENCE_WORKERS)

    # ========================================================================
    # PredictionLog bookkeeping
    # ========================================================================

    def is_finished(self, correlation_id: str) -> bool:
        db = self._session_factory()
        try:
            log = db.query(PredictionLog).filter(PredictionLog.request_id == correlation_id).first()
            return log is not None and log.response_time is not None
        finally:
            db.close()

    def _open_log(self, request: DiagnosisRequest, model_type: ModelKind) -> Optional[PredictionLog]:
        """
        Create the Processing row, or resume an unfinished one from an
        earlier delivery. Returns None when the request already finished.
        """
        db = self._session_factory()
        try:
            log = db.query(PredictionLog).filter(PredictionLog.request_id == request.correlation_id).first()
            if log is not None:
                if log.response_time is not None:
                    return None
                log.request_time = datetime.utcnow()
                db.commit()
                db.refresh(log)
                return log

            log = PredictionLog(
                image_id=request.image_id,
                model_type=model_type.value,
                request_time=datetime.utcnow(),
                api_status=ApiStatus.PROCESSING.value,
                model_version=self._image_model_version(),
                request_id=request.correlation_id,
                server_node=self.server_node,
            )
            db.add(log)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(f"Request {request.correlation_id} is already being processed")
                return None
            db.refresh(log)
            return log
        finally:
            db.close()

    def _finish_log(
        self,
        correlation_id: str,
        status: ApiStatus,
        started: float,
        model_version: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> bool:
        """Write response fields once; later calls are ignored"""
        db = self._session_factory()
        try:
            log = db.query(PredictionLog).filter(PredictionLog.request_id == correlation_id).first()
            if log is None or log.response_time is not None:
                return False
            tz = log.request_time.tzinfo
            response_time = datetime.now(tz) if tz else datetime.utcnow()
            if response_time <= log.request_time:
                response_time = log.request_time + timedelta(microseconds=1)
            log.response_time = response_time
            log.api_status = status.value
            log.error_message = ErrorSanitizer.truncate(error_message)
            log.processing_time_ms = int((time.time() - started) * 1000)
            if model_version:
                log.model_version = model_version
            db.commit()
            return True
        finally:
            db.close()

    def _image_model_version(self) -> str:
        return getattr(self.image_classifier, "model_version", None) or "unknown"

    # ========================================================================
    # Processing
    # ========================================================================

    async def process(self, request: DiagnosisRequest) -> Optional[DiagnosisResultMessage]:
        """
        Process one request.

        Returns:
            Result message to publish, or None for an already finished
            correlation id (duplicate delivery)
        """
        started = time.time()
        model_type = ModelKind.COMBINED if request.symptom_ids else ModelKind.IMAGE
        log = self._open_log(request, model_type)
        if log is None:
            logger.info(f"Skipping duplicate delivery of {request.correlation_id}")
            return None

        try:
            return await self._run(request, started)
        except Exception as e:
            logger.exception(f"Unexpected failure processing {request.correlation_id}")
            return self._fail(request, ApiStatus.FAILED, started, e)

    async def _run(self, request: DiagnosisRequest, started: float) -> DiagnosisResultMessage:
        try:
            image_bytes = await asyncio.get_running_loop().run_in_executor(
                self._executor, self.image_store.read_bytes, request.image_path
            )
        except Exception as e:
            return self._fail(request, ApiStatus.FAILED, started, e)

        image_hash = image_fingerprint(image_bytes, request.symptom_ids)
        cached = await self.cache.get_prediction(image_hash)
        if cached is not None:
            logger.info(f"Cache hit for request {request.correlation_id}")
            result = self._persist(request, cached, image_hash)
            self._finish_log(request.correlation_id, ApiStatus.SUCCESS, started, result.model_version)
            return DiagnosisResultMessage(
                correlation_id=request.correlation_id, status=ApiStatus.SUCCESS, result=result
            )

        try:
            image_result = await self._classify_image(image_bytes)
        except asyncio.TimeoutError as e:
            return self._fail(request, ApiStatus.TIMEOUT, started, e)
        except ImageClassificationError as e:
            return self._fail(request, ApiStatus.FAILED, started, e)

        status = ApiStatus.SUCCESS
        symptom_confidence = None
        symptom_version = None
        if request.symptom_ids:
            outcome = await self.symptom_classifier.infer_async(request.symptom_ids, self.inference_timeout)
            symptom_confidence = outcome.top_confidence
            symptom_version = outcome.model_version
            if outcome.status == InferenceStatus.TIMED_OUT:
                status = ApiStatus.TIMEOUT

        combined = self.combiner.combine(image_result, symptom_confidence)
        image_version = self._image_model_version()
        result = PredictionResult(
            disease_name=combined.disease_name,
            confidence=combined.image_confidence,
            final_confidence=combined.final_confidence,
            symptom_confidence=combined.symptom_confidence,
            severity_level=combined.severity_level,
            treatment_suggestion=combined.treatment_suggestion,
            model_version=image_version,
            processing_time_ms=int((time.time() - started) * 1000),
            image_hash=image_hash,
        )
        result = self._persist(request, result, image_hash)

        if status == ApiStatus.SUCCESS:
            await self.cache.set_prediction(
                image_hash, result, timedelta(hours=settings.PREDICTION_CACHE_TTL_HOURS)
            )

        log_version = f"{image_version}+{symptom_version}" if symptom_version else image_version
        self._finish_log(
            request.correlation_id,
            status,
            started,
            log_version,
            "Symptom inference timed out; neutral confidence used" if status == ApiStatus.TIMEOUT else None
        )
        logger.info(
            f"✅ Diagnosis {request.correlation_id}: {result.disease_name} "
            f"(final={result.final_confidence:.2f}, {result.severity_level})"
        )
        return DiagnosisResultMessage(correlation_id=request.correlation_id, status=status, result=result)

    async def _classify_image(self, image_bytes: bytes) -> ImageClassification:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(self._executor, self.image_classifier.classify, image_bytes),
            timeout=self.inference_timeout
        )

    def _fail(
        self,
        request: DiagnosisRequest,
        status: ApiStatus,
        started: float,
        error: BaseException
    ) -> DiagnosisResultMessage:
        message = str(error) or type(error).__name__
        logger.error(f"Diagnosis {request.correlation_id} {status.value}: {message}")
        self._finish_log(request.correlation_id, status, started, error_message=message)
        self._mark_image(request.image_id, "Failed")
        return DiagnosisResultMessage(
            correlation_id=request.correlation_id,
            status=status,
            error=ErrorSanitizer.sanitize_error(error)
        )

    def _persist(self, request: DiagnosisRequest, result: PredictionResult, image_hash: str) -> PredictionResult:
        db = self._session_factory()
        try:
            prediction = Prediction(
                image_id=request.image_id,
                disease_name=result.disease_name,
                confidence=result.confidence,
                final_confidence=result.final_confidence,
                model_version=result.model_version,
                severity_level=result.severity_level,
                treatment_suggestion=result.treatment_suggestion,
                processing_time_ms=result.processing_time_ms,
            )
            db.add(prediction)
            image = db.query(LeafImage).filter(LeafImage.id == request.image_id).first()
            if image is not None:
                image.image_status = "Processed"
                image.image_hash = image.image_hash or image_hash
            db.commit()
            db.refresh(prediction)
            return result.model_copy(update={"prediction_id": prediction.id, "image_hash": image_hash})
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _mark_image(self, image_id: int, status: str):
        db = self._session_factory()
        try:
            image = db.query(LeafImage).filter(LeafImage.id == image_id).first()
            if image is not None:
                image.image_status = status
                db.commit()
        finally:
            db.close()

    def shutdown(self):
        self._executor.shutdown(wait=False)
