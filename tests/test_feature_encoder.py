"""
Unit tests for symptom feature encoding and the symptom ontology.
"""

import logging

import numpy as np
import pytest

from coffee_diagnosis.core.errors import FeatureWidthError
from coffee_diagnosis.services.feature_encoder import encode, encode_batch
from coffee_diagnosis.services.symptom_ontology import DEFAULT_SYMPTOMS, OntologyEntry

from conftest import add_symptoms


def _ontology(weights):
    return [OntologyEntry(symptom_id=i + 1, name=f"s{i + 1}", weight=w) for i, w in enumerate(weights)]


class TestEncode:
    """Tests for encode()"""

    def test_single_symptom_two_entry_ontology(self):
        """Observed symptom weight lands at its ontology position"""
        ontology = [OntologyEntry(1, "brown spots", 0.8), OntologyEntry(2, "yellowing", 0.6)]

        vector = encode([1], ontology, 2)

        assert vector.dtype == np.float32
        np.testing.assert_allclose(vector, [0.8, 0.0], rtol=1e-6)

    def test_empty_input_is_all_zero(self):
        vector = encode([], _ontology([0.5, 0.7, 0.9]), 20)

        assert vector.shape == (20,)
        assert not vector.any()

    @pytest.mark.parametrize("symptom_ids", [[], [1], [1, 2, 3], list(range(1, 40)), [999, 1000]])
    def test_length_always_matches_width(self, symptom_ids):
        assert len(encode(symptom_ids, _ontology([0.5] * 25), 20)) == 20

    def test_disjoint_sets_union_positions(self):
        ontology = _ontology([0.1, 0.2, 0.3, 0.4, 0.5, 0.6])
        first, second = {1, 4}, {2, 6}

        union_vector = encode(first | second, ontology, 6)

        assert set(np.flatnonzero(union_vector)) == {0, 1, 3, 5}
        np.testing.assert_allclose(
            union_vector, encode(first, ontology, 6) + encode(second, ontology, 6)
        )

    def test_unknown_ids_are_ignored(self):
        vector = encode([2, 42], _ontology([0.5, 0.7]), 4)

        np.testing.assert_allclose(vector, [0.0, 0.7, 0.0, 0.0], rtol=1e-6)

    def test_short_ontology_pads_with_zeros(self):
        vector = encode([1, 2], _ontology([0.8, 0.6]), 5)

        np.testing.assert_allclose(vector, [0.8, 0.6, 0.0, 0.0, 0.0], rtol=1e-6)

    def test_ontology_order_follows_symptom_id(self):
        ontology = [OntologyEntry(7, "late", 0.9), OntologyEntry(3, "early", 0.4)]

        vector = encode([7], ontology, 2)

        np.testing.assert_allclose(vector, [0.0, 0.9], rtol=1e-6)

    def test_long_ontology_truncates_with_warning(self, caplog):
        """Symptoms past the width are dropped and a capacity warning is logged"""
        ontology = _ontology([0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7])

        with caplog.at_level(logging.WARNING):
            vector = encode([1, 7], ontology, 3)

        np.testing.assert_allclose(vector, [0.1, 0.0, 0.0], rtol=1e-6)
        assert any("feature width is 3" in r.message for r in caplog.records)

    @pytest.mark.parametrize("width", [0, -1, None])
    def test_non_positive_width_raises(self, width):
        with pytest.raises(FeatureWidthError):
            encode([1], _ontology([0.5]), width)

    def test_encode_batch_shape(self):
        matrix = encode_batch([[1], [2], []], _ontology([0.5, 0.7]), 4)

        assert matrix.shape == (3, 4)
        assert encode_batch([], _ontology([0.5]), 4).shape == (0, 4)


class TestSymptomOntology:
    """Tests for the persistent ontology"""

    def test_load_active_orders_by_id_and_skips_inactive(self, ontology, session_factory):
        ids = add_symptoms(session_factory, [0.8, 0.6, 0.7])
        ontology.deactivate(ids[1])

        entries = ontology.load_active()

        assert [e.symptom_id for e in entries] == [ids[0], ids[2]]
        assert [e.weight for e in entries] == pytest.approx([0.8, 0.7])
        assert ontology.active_count() == 2

    def test_deactivate_unknown_symptom(self, ontology):
        assert ontology.deactivate(12345) is False

    def test_weight_outside_unit_interval_rejected(self, ontology):
        with pytest.raises(ValueError):
            ontology.add_symptom("bad weight", "Leaf", weight=1.5)

    def test_add_symptom_defaults_weight(self, ontology):
        symptom = ontology.add_symptom("Leaf drop", "Leaf")

        assert symptom.weight == 1.0
        assert symptom.is_active is True

    def test_seed_defaults_only_once(self, ontology):
        assert ontology.seed_defaults() == len(DEFAULT_SYMPTOMS)
        assert ontology.seed_defaults() == 0
        assert [e.weight for e in ontology.load_active()] == pytest.approx(
            [w for _, _, _, w in DEFAULT_SYMPTOMS]
        )
