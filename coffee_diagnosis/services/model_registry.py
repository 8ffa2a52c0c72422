"""
Model Registry Service
======================

Catalog of model artifacts and their activation/production status.

Features:
- Registration with unique (model_name, version)
- Atomic switching: one active version per model type
- Production promotion of an active version
- Rollback to the previously deployed version
- Artifact validation and per-version statistics
- Switch listeners so runtimes can copy-and-swap their loaded artifact
"""

import logging
import math
import threading
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, Tuple, Union

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coffee_diagnosis.config import settings
from coffee_diagnosis.core.errors import (
    DuplicateModelVersionError,
    InactiveModelError,
    ModelNotFoundError,
    ModelRegistrationError,
)
from coffee_diagnosis.core.logging import log_audit
from coffee_diagnosis.database import SessionLocal
from coffee_diagnosis.models.diagnosis_models import Feedback, ModelKind, ModelVersion, Prediction
from coffee_diagnosis.schemas import ModelStatistics, ModelVersionPage, ModelVersionSummary
from coffee_diagnosis.services.artifact_store import (
    MAX_ARTIFACT_SIZE_BYTES,
    SUPPORTED_EXTENSIONS,
    LocalArtifactStore,
    compute_checksum,
)

logger = logging.getLogger(__name__)

SwitchListener = Callable[[ModelKind, ModelVersion], None]


class SwitchResult(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    ALREADY_ACTIVE = "already_active"


def _as_kind(model_type: Union[ModelKind, str]) -> ModelKind:
    try:
        return ModelKind(model_type)
    except ValueError:
        raise ModelRegistrationError(f"Unknown model type: {model_type}")


class ModelRegistry:
    """
    Persistent model version registry.

    Only this class mutates is_active / is_production. Activation changes
    are serialized by a process-wide lock and committed in one transaction.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        artifact_store: Optional[LocalArtifactStore] = None,
        result_cache=None
    ):
        self._session_factory = session_factory or SessionLocal
        self.artifact_store = artifact_store or LocalArtifactStore()
        self.result_cache = result_cache
        self._switch_lock = threading.Lock()
        self._listeners: List[SwitchListener] = []
        self._stale_stats: Set[str] = set()
        self._stale_lock = threading.Lock()

    # ========================================================================
    # Listeners
    # ========================================================================

    def add_listener(self, listener: SwitchListener):
        self._listeners.append(listener)

    def _notify(self, kind: ModelKind, record: ModelVersion):
        for listener in list(self._listeners):
            try:
                listener(kind, record)
            except Exception as e:
                logger.error(f"Model switch listener failed for {record.version_key}: {e}")

    # ========================================================================
    # Statistics invalidation
    # ========================================================================

    @staticmethod
    def _flagged_keys(db: Session, model_type: str, exclude_id: int) -> List[str]:
        """Version keys of other rows of a type that are active or in production"""
        rows = db.query(ModelVersion.model_name, ModelVersion.version).filter(
            ModelVersion.model_type == model_type,
            ModelVersion.id != exclude_id,
            or_(ModelVersion.is_active.is_(True), ModelVersion.is_production.is_(True))
        ).all()
        return [f"{name}:{version}" for name, version in rows]

    def _invalidate_stats(self, version_keys: Iterable[str]):
        """Drop cached statistics now in memory; Redis entries are dropped on the next read"""
        if self.result_cache is None:
            return
        with self._stale_lock:
            for key in version_keys:
                self.result_cache.memory.delete(self.result_cache.MODEL_STATS_PREFIX + key)
                self._stale_stats.add(key)

    async def _flush_stale_stats(self):
        with self._stale_lock:
            stale = list(self._stale_stats)
            self._stale_stats.clear()
        for key in stale:
            await self.result_cache.invalidate_model_stats(key)

    # ========================================================================
    # Queries
    # ========================================================================

    def get_active(
        self,
        model_type: Union[ModelKind, str],
        model_name: Optional[str] = None
    ) -> Optional[ModelVersion]:
        """Most recently created active version of a type (optionally of one model name)"""
        kind = _as_kind(model_type)
        db = self._session_factory()
        try:
            query = db.query(ModelVersion).filter(
                ModelVersion.model_type == kind.value,
                ModelVersion.is_active.is_(True)
            )
            if model_name:
                query = query.filter(ModelVersion.model_name == model_name)
            return query.order_by(ModelVersion.created_at.desc(), ModelVersion.id.desc()).first()
        finally:
            db.close()

    def get_version(self, model_name: str, version: str) -> Optional[ModelVersion]:
        db = self._session_factory()
        try:
            return db.query(ModelVersion).filter(
                ModelVersion.model_name == model_name,
                ModelVersion.version == version
            ).first()
        finally:
            db.close()

    def count_versions(self, model_name: str, version: str) -> int:
        db = self._session_factory()
        try:
            return db.query(ModelVersion).filter(
                ModelVersion.model_name == model_name,
                ModelVersion.version == version
            ).count()
        finally:
            db.close()

    def list_versions(
        self,
        model_type: Optional[Union[ModelKind, str]] = None,
        page: int = 1,
        page_size: int = 20
    ) -> ModelVersionPage:
        """Paginated versions, newest first"""
        page = max(1, page)
        page_size = max(1, min(page_size, 100))
        db = self._session_factory()
        try:
            query = db.query(ModelVersion)
            if model_type is not None:
                query = query.filter(ModelVersion.model_type == _as_kind(model_type).value)
            total = query.count()
            rows = (
                query.order_by(ModelVersion.created_at.desc(), ModelVersion.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return ModelVersionPage(
                items=[ModelVersionSummary.model_validate(r) for r in rows],
                total=total,
                page=page,
                page_size=page_size,
                total_pages=math.ceil(total / page_size) if total else 0
            )
        finally:
            db.close()

    # ========================================================================
    # Registration
    # ========================================================================

    def validate_artifact(self, file_path: str) -> Tuple[bool, Optional[str]]:
        """
        Check an artifact before registration.

        Returns:
            (is_valid, reason) where reason explains a rejection
        """
        if not file_path:
            return False, "File path is required"
        if not self.artifact_store.exists(file_path):
            return False, f"Artifact not found: {file_path}"
        extension = Path(file_path).suffix.lower()
        if extension not in SUPPORTED_EXTENSIONS:
            return False, f"Unsupported artifact extension: {extension or 'none'}"
        size = self.artifact_store.size(file_path)
        if size == 0:
            return False, "Artifact file is empty"
        if size > MAX_ARTIFACT_SIZE_BYTES:
            return False, f"Artifact exceeds maximum size ({size} bytes)"
        return True, None

    def register(
        self,
        model_name: str,
        version: str,
        model_type: Union[ModelKind, str],
        file_path: str,
        accuracy: float,
        training_dataset_version: str,
        validation_accuracy: Optional[float] = None,
        test_accuracy: Optional[float] = None,
        training_samples: int = 0,
        validation_samples: int = 0,
        test_samples: int = 0,
        file_checksum: Optional[str] = None,
        file_size_bytes: Optional[int] = None,
        feature_width: Optional[int] = None,
        created_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> ModelVersion:
        """
        Register a new, inactive model version.

        Raises:
            ModelRegistrationError: missing or invalid fields
            DuplicateModelVersionError: (model_name, version) already exists
        """
        kind = _as_kind(model_type)
        if not model_name or not version:
            raise ModelRegistrationError("model_name and version are required")
        if not file_path:
            raise ModelRegistrationError("file_path is required")
        if not training_dataset_version:
            raise ModelRegistrationError("training_dataset_version is required")
        if accuracy is None:
            raise ModelRegistrationError("accuracy is required")
        if feature_width is not None and feature_width <= 0:
            raise ModelRegistrationError(f"feature_width must be positive, got {feature_width}")

        if file_checksum is None and self.artifact_store.exists(file_path):
            data = self.artifact_store.read_bytes(file_path)
            file_checksum = compute_checksum(data)
            file_size_bytes = len(data)

        db = self._session_factory()
        try:
            existing = db.query(ModelVersion.id).filter(
                ModelVersion.model_name == model_name,
                ModelVersion.version == version
            ).first()
            if existing:
                raise DuplicateModelVersionError(model_name, version)

            try:
                record = ModelVersion(
                    model_name=model_name,
                    version=version,
                    model_type=kind.value,
                    file_path=file_path,
                    file_checksum=file_checksum,
                    file_size_bytes=file_size_bytes or 0,
                    feature_width=feature_width,
                    accuracy=accuracy,
                    validation_accuracy=validation_accuracy,
                    test_accuracy=test_accuracy,
                    training_samples=training_samples,
                    validation_samples=validation_samples,
                    test_samples=test_samples,
                    training_dataset_version=training_dataset_version,
                    is_active=False,
                    is_production=False,
                    created_by=created_by,
                    notes=notes,
                )
            except ValueError as e:
                raise ModelRegistrationError(str(e))

            db.add(record)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise DuplicateModelVersionError(model_name, version)
            db.refresh(record)
        finally:
            db.close()

        logger.info(f"Registered model version: {record.version_key} ({kind.value})")
        log_audit("model_registered", created_by, {
            "model": record.version_key,
            "model_type": kind.value,
            "accuracy": accuracy,
        })
        return record

    # ========================================================================
    # Activation / production
    # ========================================================================

    def switch_active(self, model_name: str, version: str, actor_id: Optional[str] = None) -> SwitchResult:
        """
        Make (model_name, version) the only active version of its type.

        Every other version of the type is deactivated and loses its
        production flag in the same transaction. Listeners run after commit.
        """
        with self._switch_lock:
            db = self._session_factory()
            try:
                target = db.query(ModelVersion).filter(
                    ModelVersion.model_name == model_name,
                    ModelVersion.version == version
                ).first()
                if target is None:
                    logger.error(f"Version not found: {model_name}:{version}")
                    return SwitchResult.NOT_FOUND
                if target.is_active:
                    return SwitchResult.ALREADY_ACTIVE

                changed = self._flagged_keys(db, target.model_type, target.id)
                db.query(ModelVersion).filter(
                    ModelVersion.model_type == target.model_type,
                    ModelVersion.id != target.id
                ).update(
                    {ModelVersion.is_active: False, ModelVersion.is_production: False},
                    synchronize_session=False
                )
                target.is_active = True
                target.deployed_at = datetime.utcnow()
                db.commit()
                db.refresh(target)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

            self._invalidate_stats(changed + [target.version_key])
            kind = ModelKind(target.model_type)
            logger.info(f"✅ Activated version: {target.version_key} ({kind.value})")
            log_audit("model_switched", actor_id, {"model": target.version_key, "model_type": kind.value})
            self._notify(kind, target)
            return SwitchResult.SUCCESS

    def promote_to_production(self, model_name: str, version: str, actor_id: Optional[str] = None) -> ModelVersion:
        """
        Mark an active version as the one serving live traffic.

        Raises:
            ModelNotFoundError: unknown version
            InactiveModelError: version is not active
        """
        with self._switch_lock:
            db = self._session_factory()
            try:
                target = db.query(ModelVersion).filter(
                    ModelVersion.model_name == model_name,
                    ModelVersion.version == version
                ).first()
                if target is None:
                    raise ModelNotFoundError(model_name, version)
                if not target.is_active:
                    raise InactiveModelError(
                        f"Model {model_name}:{version} must be active before production deployment"
                    )

                changed = self._flagged_keys(db, target.model_type, target.id)
                db.query(ModelVersion).filter(
                    ModelVersion.model_type == target.model_type,
                    ModelVersion.id != target.id
                ).update({ModelVersion.is_production: False}, synchronize_session=False)
                target.is_production = True
                target.deployed_at = datetime.utcnow()
                db.commit()
                db.refresh(target)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
            self._invalidate_stats(changed + [target.version_key])

        logger.info(f"Promoted to production: {target.version_key}")
        log_audit("model_promoted", actor_id, {"model": target.version_key, "model_type": target.model_type})
        return target

    def deactivate(self, model_name: str, version: str, actor_id: Optional[str] = None) -> bool:
        """Take a version out of service; runtimes holding it fall back"""
        with self._switch_lock:
            db = self._session_factory()
            try:
                target = db.query(ModelVersion).filter(
                    ModelVersion.model_name == model_name,
                    ModelVersion.version == version
                ).first()
                if target is None:
                    return False
                target.is_active = False
                target.is_production = False
                db.commit()
                db.refresh(target)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

            self._invalidate_stats([target.version_key])
            logger.info(f"Deactivated version: {target.version_key}")
            log_audit("model_deactivated", actor_id, {"model": target.version_key})
            self._notify(ModelKind(target.model_type), target)
            return True

    def rollback(self, model_type: Union[ModelKind, str], actor_id: Optional[str] = None) -> Optional[ModelVersion]:
        """Re-activate the most recently deployed, currently inactive version of a type"""
        kind = _as_kind(model_type)
        db = self._session_factory()
        try:
            previous = (
                db.query(ModelVersion)
                .filter(
                    ModelVersion.model_type == kind.value,
                    ModelVersion.is_active.is_(False),
                    ModelVersion.deployed_at.isnot(None)
                )
                .order_by(ModelVersion.deployed_at.desc())
                .first()
            )
        finally:
            db.close()

        if previous is None:
            logger.error(f"No previous version to rollback for: {kind.value}")
            return None

        result = self.switch_active(previous.model_name, previous.version, actor_id=actor_id)
        if result != SwitchResult.SUCCESS:
            return None
        logger.info(f"Rolled back {kind.value} to version {previous.version_key}")
        return self.get_version(previous.model_name, previous.version)

    # ========================================================================
    # Statistics / health
    # ========================================================================

    async def get_statistics(self, model_name: str, version: str) -> Optional[ModelStatistics]:
        """Per-version metrics plus prediction and feedback aggregates"""
        version_key = f"{model_name}:{version}"
        if self.result_cache is not None:
            await self._flush_stale_stats()
            cached = await self.result_cache.get_model_stats(version_key)
            if cached is not None:
                return cached

        db = self._session_factory()
        try:
            record = db.query(ModelVersion).filter(
                ModelVersion.model_name == model_name,
                ModelVersion.version == version
            ).first()
            if record is None:
                return None

            total, avg_confidence = db.query(
                func.count(Prediction.id), func.avg(Prediction.confidence)
            ).filter(Prediction.model_version == version_key).one()

            avg_rating = db.query(func.avg(Feedback.rating)).join(
                Prediction, Feedback.prediction_id == Prediction.id
            ).filter(Prediction.model_version == version_key).scalar()

            stats = ModelStatistics(
                model_name=record.model_name,
                version=record.version,
                model_type=record.model_type,
                accuracy=record.accuracy,
                validation_accuracy=record.validation_accuracy,
                test_accuracy=record.test_accuracy,
                is_active=record.is_active,
                is_production=record.is_production,
                deployed_at=record.deployed_at,
                total_predictions=total or 0,
                average_confidence=round(float(avg_confidence or 0.0), 4),
                average_rating=round(float(avg_rating or 0.0), 2),
            )
        finally:
            db.close()

        if self.result_cache is not None:
            await self.result_cache.set_model_stats(
                version_key, stats, timedelta(minutes=settings.MODEL_STATS_CACHE_TTL_MINUTES)
            )
        return stats

    def is_healthy(self) -> bool:
        """At least one active model whose artifact is present"""
        db = self._session_factory()
        try:
            active = db.query(ModelVersion).filter(ModelVersion.is_active.is_(True)).all()
        finally:
            db.close()
        return any(self.artifact_store.exists(m.file_path) for m in active)
