"""
Artifact Store
==============

File-system storage for model artifacts and leaf images.

Features:
- Relative paths resolved under ML_MODELS_DIR
- SHA-256 checksum computation and verification
- Artifact validation (extension, size) before registration
"""

import hashlib
import logging
from pathlib import Path
from typing import Optional, Union

from coffee_diagnosis.config import settings
from coffee_diagnosis.core.errors import ArtifactNotFoundError, ChecksumMismatchError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".onnx", ".joblib", ".pkl", ".h5", ".model"}
MAX_ARTIFACT_SIZE_BYTES = 1024 * 1024 * 1024  # 1 GiB


def compute_checksum(data: bytes) -> str:
    """Compute SHA-256 checksum of binary data."""
    return hashlib.sha256(data).hexdigest()


class LocalArtifactStore:
    """Reads and writes artifact bytes on the local file system"""

    def __init__(self, base_dir: Optional[Union[str, Path]] = None):
        self.base_dir = Path(base_dir or settings.ML_MODELS_DIR)

    def resolve(self, path: Union[str, Path]) -> Path:
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self.base_dir / candidate

    def exists(self, path: Union[str, Path]) -> bool:
        return self.resolve(path).is_file()

    def size(self, path: Union[str, Path]) -> int:
        resolved = self.resolve(path)
        if not resolved.is_file():
            raise ArtifactNotFoundError(f"Artifact not found: {path}")
        return resolved.stat().st_size

    def read_bytes(self, path: Union[str, Path]) -> bytes:
        resolved = self.resolve(path)
        if not resolved.is_file():
            raise ArtifactNotFoundError(f"Artifact not found: {path}")
        return resolved.read_bytes()

    def write_bytes(self, path: Union[str, Path], data: bytes) -> str:
        """Write artifact bytes, returning their checksum"""
        resolved = self.resolve(path)
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_bytes(data)
        checksum = compute_checksum(data)
        logger.info(f"Stored artifact {resolved} ({len(data)} bytes, sha256={checksum[:12]})")
        return checksum

    def verify(self, path: Union[str, Path], data: bytes, expected_checksum: Optional[str]) -> None:
        """Raise ChecksumMismatchError when bytes don't match the registered checksum"""
        if not expected_checksum:
            return
        actual = compute_checksum(data)
        if actual.lower() != expected_checksum.lower():
            raise ChecksumMismatchError(str(path), expected_checksum, actual)
