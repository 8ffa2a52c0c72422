"""
Error taxonomy and sanitization for the diagnosis core

Availability problems (no active model, missing artifact, checksum mismatch)
and inference faults never surface from predict operations; they are mapped
to fallback results. The exceptions below cover caller mistakes that must be
rejected synchronously, plus typed failures of external collaborators.
"""

import uuid
from typing import Optional, Dict, Any

MAX_ERROR_MESSAGE_LENGTH = 500


class DiagnosisError(Exception):
    """Base exception for the diagnosis core"""
    pass


class ModelRegistryError(DiagnosisError):
    """Raised for invalid model registry mutations"""
    pass


class DuplicateModelVersionError(ModelRegistryError):
    """Raised when (model_name, version) is already registered"""

    def __init__(self, model_name: str, version: str):
        self.model_name = model_name
        self.version = version
        super().__init__(f"Model version already registered: {model_name}:{version}")


class ModelNotFoundError(ModelRegistryError):
    """Raised when a referenced model version does not exist"""

    def __init__(self, model_name: str, version: str):
        self.model_name = model_name
        self.version = version
        super().__init__(f"Model version not found: {model_name}:{version}")


class ModelRegistrationError(ModelRegistryError):
    """Raised when a registration request is missing or has invalid fields"""
    pass


class InactiveModelError(ModelRegistryError):
    """Raised when promoting a version that is not active"""
    pass


class FeatureWidthError(DiagnosisError):
    """Raised for malformed feature widths"""
    pass


class ArtifactError(DiagnosisError):
    """Base exception for artifact store problems"""
    pass


class ArtifactNotFoundError(ArtifactError):
    pass


class ChecksumMismatchError(ArtifactError):
    """Raised when artifact bytes don't match the registered checksum"""

    def __init__(self, path: str, expected: str, actual: str):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch for {path}")


class ImageClassificationError(DiagnosisError):
    """
    Raised by image classifier providers when classification fails.

    Distinguishable from a low-confidence success, which is returned normally.
    """
    pass


class FeedbackError(DiagnosisError):
    """Raised for invalid feedback submissions"""
    pass


class ErrorSanitizer:
    """Builds safe error payloads for published results and persisted logs"""

    SAFE_ERROR_MESSAGES = {
        "ImageClassificationError": "Image classification failed",
        "TimeoutError": "Inference timed out",
        "ArtifactNotFoundError": "Image file not found",
        "FileNotFoundError": "Image file not found",
    }

    @staticmethod
    def truncate(message: Optional[str], limit: int = MAX_ERROR_MESSAGE_LENGTH) -> Optional[str]:
        if message is None:
            return None
        return message[:limit]

    @classmethod
    def sanitize_error(cls, error: BaseException, error_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Sanitize error for a client-facing result message

        Args:
            error: Exception instance
            error_id: Tracking id, generated when omitted

        Returns:
            Dictionary with a generic message, error type and tracking id
        """
        error_type = type(error).__name__
        return {
            "error": cls.SAFE_ERROR_MESSAGES.get(
                error_type, "An error occurred processing your request"
            ),
            "type": error_type,
            "error_id": error_id or cls._generate_error_id()
        }

    @staticmethod
    def _generate_error_id() -> str:
        """Generate a unique error ID for tracking"""
        return str(uuid.uuid4())[:8]
