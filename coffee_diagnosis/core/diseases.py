"""
Coffee leaf disease catalog

Fixed ordered class list shared by every classifier output, plus the
severity bands and treatment suggestions attached to a final diagnosis.
"""

from typing import List, Tuple

DISEASE_CLASSES: List[str] = ["Cercospora", "Healthy", "Miner", "Phoma", "Rust"]

# (lower bound, label), checked top-down
SEVERITY_BANDS: List[Tuple[float, str]] = [
    (0.9, "Very High"),
    (0.8, "High"),
    (0.7, "Medium"),
    (0.6, "Low"),
]
LOWEST_SEVERITY = "Very Low"

DISEASE_DESCRIPTIONS = {
    "Cercospora": "Cercospora leaf spot: small brown spots on the leaf surface that can spread and cause defoliation.",
    "Healthy": "Healthy coffee leaf: no sign of disease, natural green color.",
    "Miner": "Leaf miner: insect larvae tunnel inside the leaf and reduce photosynthesis.",
    "Phoma": "Phoma leaf spot: round brown lesions with well defined margins.",
    "Rust": "Coffee leaf rust: yellow-orange pustules on the underside of the leaf, can cause severe defoliation.",
}

TREATMENT_SUGGESTIONS = {
    "Cercospora": "Apply a copper hydroxide fungicide. Improve airflow and avoid wetting the foliage.",
    "Healthy": "Continue routine care and inspect regularly to catch disease early.",
    "Miner": "Use biological insecticides or insect traps. Remove and destroy infested leaves.",
    "Phoma": "Apply fungicide and improve drainage. Prune branches to increase ventilation.",
    "Rust": "Apply a rust-specific fungicide. Increase plant spacing and improve light exposure.",
}
DEFAULT_TREATMENT = "Consult an agronomist for a treatment plan suited to this case."
DEFAULT_DESCRIPTION = "Unknown disease."


def severity_for(confidence: float) -> str:
    for lower_bound, label in SEVERITY_BANDS:
        if confidence >= lower_bound:
            return label
    return LOWEST_SEVERITY


def treatment_for(disease_name: str) -> str:
    return TREATMENT_SUGGESTIONS.get(disease_name, DEFAULT_TREATMENT)


def description_for(disease_name: str) -> str:
    return DISEASE_DESCRIPTIONS.get(disease_name, DEFAULT_DESCRIPTION)
