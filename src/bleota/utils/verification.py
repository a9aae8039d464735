"""MD5 verification utilities for firmware integrity checking."""

import hashlib
from pathlib import Path

from bleota.utils.logging import get_logger


def compute_md5(file_path: Path, chunk_size: int = 8192) -> str:
    """Compute MD5 hash of a file.

    Args:
        file_path: Path to file to hash
        chunk_size: Read buffer size (default 8KB for memory efficiency)

    Returns:
        32-character hex MD5 hash string

    Raises:
        FileNotFoundError: If file doesn't exist
        IOError: If file read fails
    """
    logger = get_logger("verification")
    md5_hash = hashlib.md5()

    try:
        with open(file_path, "rb") as f:
            while chunk := f.read(chunk_size):
                md5_hash.update(chunk)

        result = md5_hash.hexdigest()
        logger.debug(f"Computed MD5 for {file_path.name}: {result}")
        return result

    except FileNotFoundError:
        logger.error(f"Firmware not found: {file_path}")
        raise
    except IOError as e:
        logger.error(f"Failed to read firmware {file_path}: {e}")
        raise


def verify_md5_or_raise(file_path: Path, expected_md5: str) -> None:
    """Verify firmware MD5, raise if it does not match.

    Args:
        file_path: Firmware image to verify
        expected_md5: Expected MD5 hash (32-char hex string)

    Raises:
        ValueError: If expected_md5 is malformed or the hash does not match
        FileNotFoundError: If file doesn't exist
    """
    logger = get_logger("verification")

    if not isinstance(expected_md5, str) or len(expected_md5) != 32:
        raise ValueError(f"Invalid MD5 format: {expected_md5} (must be 32-char hex)")

    actual_md5 = compute_md5(file_path)
    if actual_md5 != expected_md5.lower():
        logger.error(
            f"MD5 mismatch for {file_path.name}: "
            f"expected {expected_md5.lower()}, got {actual_md5}"
        )
        raise ValueError(f"MD5_MISMATCH: expected {expected_md5.lower()}, got {actual_md5}")

    logger.info(f"MD5 verification passed for {file_path.name}")
