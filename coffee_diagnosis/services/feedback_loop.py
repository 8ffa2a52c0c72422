"""
Feedback-to-Training Loop
Collects user feedback on predictions and turns corrected labels into
training data
"""

import logging
from typing import Callable, Optional

from sqlalchemy import and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coffee_diagnosis.core.errors import FeedbackError
from coffee_diagnosis.core.logging import log_audit
from coffee_diagnosis.database import SessionLocal
from coffee_diagnosis.models.diagnosis_models import Feedback, Prediction, TrainingData, TrainingSource

logger = logging.getLogger(__name__)

FEEDBACK_TYPES = ("Manual", "Auto", "Expert")


class FeedbackLoop:
    """
    Feedback intake and conversion.

    Only this class creates TrainingData rows from Feedback. Conversion is
    idempotent: a feedback row is converted at most once.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory or SessionLocal

    def submit_feedback(
        self,
        prediction_id: int,
        user_id: str,
        rating: int,
        feedback_text: Optional[str] = None,
        correct_disease_name: Optional[str] = None,
        feedback_type: str = "Manual"
    ) -> Feedback:
        """
        Record feedback on a prediction.

        Raises:
            FeedbackError: unknown prediction, rating outside 1-5, or unknown feedback type
        """
        if rating is None or not (1 <= int(rating) <= 5):
            raise FeedbackError(f"Rating must be between 1 and 5, got {rating}")
        if feedback_type not in FEEDBACK_TYPES:
            raise FeedbackError(f"Unknown feedback type: {feedback_type}")

        db = self._session_factory()
        try:
            prediction = db.query(Prediction).filter(Prediction.id == prediction_id).first()
            if prediction is None:
                raise FeedbackError(f"Prediction {prediction_id} not found")

            feedback = Feedback(
                prediction_id=prediction_id,
                user_id=user_id,
                rating=int(rating),
                feedback_text=feedback_text,
                correct_disease_name=(correct_disease_name or "").strip() or None,
                feedback_type=feedback_type,
            )
            db.add(feedback)
            db.commit()
            db.refresh(feedback)
            logger.info(f"Feedback {feedback.id} recorded for prediction {prediction_id} (rating={rating})")
            return feedback
        finally:
            db.close()

    @staticmethod
    def _pending_filter():
        return and_(
            Feedback.is_used_for_training.is_(False),
            Feedback.correct_disease_name.isnot(None),
            func.length(func.trim(Feedback.correct_disease_name)) > 0
        )

    def pending_count(self) -> int:
        """Feedback rows with a corrected label not yet converted"""
        db = self._session_factory()
        try:
            return db.query(Feedback).filter(self._pending_filter()).count()
        finally:
            db.close()

    def convert_feedback_batch(self, limit: Optional[int] = None, actor_id: Optional[str] = None) -> int:
        """
        Convert pending feedback into TrainingData (source = Feedback).

        Creating the rows and flagging the feedback happen in one
        transaction. Returns the number of TrainingData rows created.
        """
        db = self._session_factory()
        try:
            query = (
                db.query(Feedback, Prediction)
                .join(Prediction, Feedback.prediction_id == Prediction.id)
                .filter(self._pending_filter())
                .order_by(Feedback.id.asc())
            )
            if limit:
                query = query.limit(limit)
            pending = query.all()
            if not pending:
                return 0

            feedback_ids = [fb.id for fb, _ in pending]
            already_linked = {
                row.feedback_id for row in
                db.query(TrainingData.feedback_id).filter(TrainingData.feedback_id.in_(feedback_ids)).all()
            }

            created = 0
            for feedback, prediction in pending:
                if feedback.id not in already_linked:
                    db.add(TrainingData(
                        image_id=prediction.image_id,
                        label=feedback.correct_disease_name.strip(),
                        source=TrainingSource.FEEDBACK.value,
                        is_validated=True,
                        validated_by=feedback.user_id,
                        dataset_split="train",
                        original_prediction=prediction.disease_name,
                        original_confidence=prediction.confidence,
                        feedback_id=feedback.id,
                        quality="High" if feedback.feedback_type == "Expert" else "Medium",
                        notes=f"From feedback #{feedback.id}",
                    ))
                    created += 1
                feedback.is_used_for_training = True

            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning("Feedback batch was converted concurrently; nothing written")
                return 0
        finally:
            db.close()

        if created:
            logger.info(f"Converted {created} feedback rows into training data")
            log_audit("feedback_converted", actor_id, {"created": created, "feedback_ids": feedback_ids})
        return created
