"""
Background Scheduler for Symptom Model Retraining
=================================================
APScheduler interval job that converts pending feedback and retrains the
symptom model once enough new training data has accumulated.
"""

import logging
import threading
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from coffee_diagnosis.config import settings
from coffee_diagnosis.models.diagnosis_models import ModelVersion
from coffee_diagnosis.services.feedback_loop import FeedbackLoop
from coffee_diagnosis.services.symptom_classifier import SymptomClassifier

logger = logging.getLogger(__name__)


class RetrainingTrigger:
    """
    Idempotent retraining entry point.

    Retrains only when the qualifying sample count meets the threshold and
    has grown since the last successful retrain. Overlapping runs are skipped.
    """

    def __init__(
        self,
        feedback_loop: FeedbackLoop,
        classifier: SymptomClassifier,
        min_samples: Optional[int] = None
    ):
        self.feedback_loop = feedback_loop
        self.classifier = classifier
        self.min_samples = settings.MIN_RETRAIN_SAMPLES if min_samples is None else min_samples
        self.last_trained_count: Optional[int] = None
        self._lock = threading.Lock()

    def run_once(self) -> Optional[ModelVersion]:
        if not self._lock.acquire(blocking=False):
            logger.info("Retraining check already running, skipping")
            return None
        try:
            converted = self.feedback_loop.convert_feedback_batch(actor_id="retraining_trigger")
            count = self.classifier.count_training_samples()
            logger.info(f"Retraining check: {converted} feedback converted, {count} qualifying samples")

            if count < self.min_samples:
                logger.info(f"Retraining skipped: {count}/{self.min_samples} samples")
                return None
            if self.last_trained_count is not None and count <= self.last_trained_count:
                logger.info(f"Retraining skipped: no new samples since last run ({count})")
                return None

            record = self.classifier.retrain(actor_id="retraining_trigger")
            if record is not None:
                self.last_trained_count = count
                logger.info(f"✅ Retrained symptom model registered as {record.version_key} (inactive)")
            return record
        finally:
            self._lock.release()


class TrainingScheduler:
    """Manages the periodic retraining check."""

    JOB_ID = "symptom_retraining_check"

    def __init__(self, trigger: RetrainingTrigger, interval_hours: Optional[int] = None):
        self.trigger = trigger
        self.interval_hours = interval_hours or settings.RETRAIN_CHECK_INTERVAL_HOURS
        self.scheduler = BackgroundScheduler()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Start the background scheduler."""
        if not self.scheduler.running:
            self.scheduler.add_job(
                self._run_retraining_check,
                IntervalTrigger(hours=self.interval_hours),
                id=self.JOB_ID,
                replace_existing=True,
                name='Symptom Model Retraining Check'
            )
            self.scheduler.start()
            logger.info(f"Training scheduler started (every {self.interval_hours}h)")

    def stop(self):
        """Stop the background scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Training scheduler stopped")

    def _run_retraining_check(self):
        try:
            self.trigger.run_once()
        except Exception as e:
            logger.error(f"Error in retraining check: {e}")


_scheduler_instance: Optional[TrainingScheduler] = None


def get_training_scheduler(trigger: Optional[RetrainingTrigger] = None) -> TrainingScheduler:
    """Get or create the global scheduler instance."""
    global _scheduler_instance
    if _scheduler_instance is None:
        if trigger is None:
            trigger = RetrainingTrigger(FeedbackLoop(), SymptomClassifier())
        _scheduler_instance = TrainingScheduler(trigger)
    return _scheduler_instance


def start_training_scheduler(trigger: Optional[RetrainingTrigger] = None):
    """Start the global scheduler."""
    get_training_scheduler(trigger).start()


def stop_training_scheduler():
    """Stop the global scheduler."""
    global _scheduler_instance
    if _scheduler_instance:
        _scheduler_instance.stop()
        _scheduler_instance = None
