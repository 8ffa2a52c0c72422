"""
Unit tests for confidence blending and the disease catalog.
"""

import pytest

from coffee_diagnosis.core.diseases import (
    DEFAULT_TREATMENT,
    DISEASE_CLASSES,
    TREATMENT_SUGGESTIONS,
    description_for,
    severity_for,
    treatment_for,
)
from coffee_diagnosis.schemas import ImageClassification
from coffee_diagnosis.services.prediction_combiner import PredictionCombiner


class TestPredictionCombiner:
    """Tests for PredictionCombiner"""

    def test_default_blend(self):
        """Image 0.9 with symptom 0.6 blends to 0.81"""
        combiner = PredictionCombiner(0.7, 0.3)

        combined = combiner.combine(ImageClassification(label="Rust", confidence=0.9), 0.6)

        assert combined.disease_name == "Rust"
        assert combined.final_confidence == pytest.approx(0.81)
        assert combined.severity_level == "High"
        assert combined.treatment_suggestion == TREATMENT_SUGGESTIONS["Rust"]

    def test_missing_symptom_confidence_keeps_image_confidence(self):
        combined = PredictionCombiner(0.7, 0.3).combine(
            ImageClassification(label="Phoma", confidence=0.42)
        )

        assert combined.final_confidence == pytest.approx(0.42)
        assert combined.symptom_confidence is None
        assert combined.severity_level == "Very Low"

    def test_label_comes_from_image(self):
        """A confident symptom model never overrides the image label"""
        combined = PredictionCombiner(0.5, 0.5).combine(
            ImageClassification(label="Miner", confidence=0.2), 1.0
        )

        assert combined.disease_name == "Miner"
        assert combined.final_confidence == pytest.approx(0.6)

    @pytest.mark.parametrize("image_conf,symptom_conf", [(0.0, 0.0), (1.0, 1.0), (0.3, 0.95)])
    def test_final_confidence_stays_in_unit_interval(self, image_conf, symptom_conf):
        final = PredictionCombiner(0.7, 0.3).blend(image_conf, symptom_conf)

        assert 0.0 <= final <= 1.0

    @pytest.mark.parametrize("weights", [(0.5, 0.4), (1.2, -0.2), (0.0, 0.0)])
    def test_invalid_weights_rejected(self, weights):
        with pytest.raises(ValueError):
            PredictionCombiner(*weights)

    def test_defaults_from_settings(self):
        combiner = PredictionCombiner()

        assert combiner.image_weight + combiner.symptom_weight == pytest.approx(1.0)


class TestDiseaseCatalog:
    """Tests for severity bands and treatments"""

    @pytest.mark.parametrize("confidence,expected", [
        (0.95, "Very High"),
        (0.9, "Very High"),
        (0.85, "High"),
        (0.7, "Medium"),
        (0.65, "Low"),
        (0.59, "Very Low"),
    ])
    def test_severity_bands(self, confidence, expected):
        assert severity_for(confidence) == expected

    def test_every_class_has_treatment_and_description(self):
        for disease in DISEASE_CLASSES:
            assert treatment_for(disease) != DEFAULT_TREATMENT
            assert description_for(disease) != "Unknown disease."

    def test_unknown_disease_gets_default_treatment(self):
        assert treatment_for("Blight") == DEFAULT_TREATMENT
