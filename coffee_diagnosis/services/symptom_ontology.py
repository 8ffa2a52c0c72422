"""
Symptom Ontology Service
Weighted, soft-deletable symptom catalog read in stable id order
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Callable

from sqlalchemy.orm import Session

from coffee_diagnosis.database import SessionLocal
from coffee_diagnosis.models.diagnosis_models import Symptom
from coffee_diagnosis.core.logging import log_audit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OntologyEntry:
    """Active symptom as seen by the feature encoder"""
    symptom_id: int
    name: str
    weight: float


# name, description, category, weight
DEFAULT_SYMPTOMS = [
    ("Brown spots on leaf", "Round brown spots on the upper leaf surface", "Leaf", 0.8),
    ("Leaf yellowing", "Leaf turns abnormally yellow", "Leaf", 0.6),
    ("Leaf wilting", "Leaf is wilted and dry", "Leaf", 0.7),
    ("Orange spots underside", "Orange spots on the underside of the leaf", "Leaf", 0.9),
    ("Holes in leaf", "Small holes bored through the leaf surface", "Leaf", 0.8),
    ("Black spots", "Black spot lesions on the leaf", "Leaf", 0.7),
    ("Burnt leaf edges", "Leaf margins look scorched and dry", "Leaf", 0.5),
    ("Curled leaves", "Leaf is curled or deformed", "Leaf", 0.6),
]


class SymptomOntology:
    """
    Read/write access to the symptom catalog.

    Symptoms are never hard-deleted; deactivation removes them from the
    active ontology while keeping observations that reference them valid.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory or SessionLocal

    def load_active(self) -> List[OntologyEntry]:
        """Active symptoms ordered by id"""
        db = self._session_factory()
        try:
            rows = (
                db.query(Symptom)
                .filter(Symptom.is_active.is_(True))
                .order_by(Symptom.id.asc())
                .all()
            )
            return [OntologyEntry(symptom_id=s.id, name=s.name, weight=float(s.weight)) for s in rows]
        finally:
            db.close()

    def active_count(self) -> int:
        db = self._session_factory()
        try:
            return db.query(Symptom).filter(Symptom.is_active.is_(True)).count()
        finally:
            db.close()

    def add_symptom(
        self,
        name: str,
        category: str,
        weight: float = 1.0,
        description: Optional[str] = None
    ) -> Symptom:
        """Add a symptom; weight outside [0, 1] raises ValueError"""
        db = self._session_factory()
        try:
            symptom = Symptom(name=name, category=category, weight=weight, description=description)
            db.add(symptom)
            db.commit()
            db.refresh(symptom)
            logger.info(f"Added symptom {symptom.id}: {name} (weight={weight})")
            return symptom
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def deactivate(self, symptom_id: int) -> bool:
        db = self._session_factory()
        try:
            symptom = db.query(Symptom).filter(Symptom.id == symptom_id).first()
            if symptom is None:
                logger.warning(f"Symptom {symptom_id} not found")
                return False
            symptom.is_active = False
            db.commit()
            log_audit("symptom_deactivated", None, {"symptom_id": symptom_id, "name": symptom.name})
            return True
        finally:
            db.close()

    def seed_defaults(self) -> int:
        """Insert the default leaf symptoms into an empty catalog"""
        db = self._session_factory()
        try:
            if db.query(Symptom).count() > 0:
                return 0
            for name, description, category, weight in DEFAULT_SYMPTOMS:
                db.add(Symptom(name=name, description=description, category=category, weight=weight))
            db.commit()
            logger.info(f"Seeded {len(DEFAULT_SYMPTOMS)} symptoms")
            return len(DEFAULT_SYMPTOMS)
        finally:
            db.close()
