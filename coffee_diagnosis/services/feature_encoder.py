"""
Symptom feature encoding

Maps a set of observed symptom ids onto a fixed-width float32 vector.
Position i holds the weight of the i-th active symptom (id order) when it
was observed, otherwise 0. Symptoms past the vector width can't be
represented and are dropped with a capacity warning.
"""

import logging
from typing import Iterable, Sequence, Set, Tuple

import numpy as np

from coffee_diagnosis.core.errors import FeatureWidthError

logger = logging.getLogger(__name__)

_capacity_warnings: Set[Tuple[int, int]] = set()


def encode(symptom_ids: Iterable[int], ontology: Sequence, width: int) -> np.ndarray:
    """
    Encode observed symptoms against the active ontology.

    Args:
        symptom_ids: Observed symptom ids; unknown or inactive ids are ignored
        ontology: Active OntologyEntry items
        width: Feature width the model expects

    Returns:
        float32 vector of length ``width``
    """
    if width is None or int(width) <= 0:
        raise FeatureWidthError(f"Feature width must be positive, got {width}")
    width = int(width)

    features = np.zeros(width, dtype=np.float32)
    observed = set(symptom_ids or [])
    ordered = sorted(ontology, key=lambda entry: entry.symptom_id)

    if len(ordered) > width:
        key = (len(ordered), width)
        if key not in _capacity_warnings:
            _capacity_warnings.add(key)
            logger.warning(
                f"Symptom ontology has {len(ordered)} active entries but feature width is {width}; "
                f"symptoms past position {width} are not represented"
            )

    for position, entry in enumerate(ordered[:width]):
        if entry.symptom_id in observed:
            features[position] = entry.weight

    return features


def encode_batch(samples: Iterable[Iterable[int]], ontology: Sequence, width: int) -> np.ndarray:
    """Stack encoded vectors into an (n, width) matrix"""
    rows = [encode(sample, ontology, width) for sample in samples]
    if not rows:
        return np.zeros((0, int(width)), dtype=np.float32)
    return np.vstack(rows)
