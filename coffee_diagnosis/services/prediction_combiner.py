"""
Prediction Combiner
Blends image and symptom confidences into the final diagnosis
"""

import logging
from dataclasses import dataclass
from typing import Optional

from coffee_diagnosis.config import settings
from coffee_diagnosis.core.diseases import severity_for, treatment_for
from coffee_diagnosis.schemas import ImageClassification

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-6


@dataclass(frozen=True)
class CombinedPrediction:
    disease_name: str
    image_confidence: float
    symptom_confidence: Optional[float]
    final_confidence: float
    severity_level: str
    treatment_suggestion: str


class PredictionCombiner:
    """
    Convex blend of the image classifier and symptom classifier.

    The disease label always comes from the image classifier; symptoms
    only adjust the confidence.
    """

    def __init__(self, image_weight: Optional[float] = None, symptom_weight: Optional[float] = None):
        image_weight = settings.IMAGE_CONFIDENCE_WEIGHT if image_weight is None else image_weight
        symptom_weight = settings.SYMPTOM_CONFIDENCE_WEIGHT if symptom_weight is None else symptom_weight
        if image_weight < 0 or symptom_weight < 0:
            raise ValueError("Blend weights must be non-negative")
        if abs(image_weight + symptom_weight - 1.0) > WEIGHT_TOLERANCE:
            raise ValueError(
                f"Blend weights must sum to 1.0, got {image_weight} + {symptom_weight}"
            )
        self.image_weight = image_weight
        self.symptom_weight = symptom_weight

    def blend(self, image_confidence: float, symptom_confidence: Optional[float] = None) -> float:
        if symptom_confidence is None:
            return image_confidence
        final = self.image_weight * image_confidence + self.symptom_weight * symptom_confidence
        return min(1.0, max(0.0, final))

    def combine(
        self,
        image_result: ImageClassification,
        symptom_confidence: Optional[float] = None
    ) -> CombinedPrediction:
        final_confidence = self.blend(image_result.confidence, symptom_confidence)
        logger.debug(
            f"Combined {image_result.label}: image={image_result.confidence:.3f}, "
            f"symptom={symptom_confidence}, final={final_confidence:.3f}"
        )
        return CombinedPrediction(
            disease_name=image_result.label,
            image_confidence=image_result.confidence,
            symptom_confidence=symptom_confidence,
            final_confidence=final_confidence,
            severity_level=severity_for(final_confidence),
            treatment_suggestion=treatment_for(image_result.label),
        )
