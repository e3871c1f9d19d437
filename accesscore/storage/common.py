"""Helpers shared between the memory and postgres backends.

Keeps secret-at-rest handling and timestamp encoding identical across
storage engines so records move between them without conversion.
"""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from accesscore.logging import get_logger

logger = get_logger(__name__)


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: Optional[str], fs_root: Path) -> Fernet:
    """Build the Fernet cipher used for MFA secrets at rest.

    Falls back to MFA_ENCRYPTION_KEY, then a key file under SHARED_FS_ROOT,
    generating and persisting one when nothing is configured.
    """
    material = key_material or os.getenv("MFA_ENCRYPTION_KEY")
    if not material:
        shared_fs = Path(os.getenv("SHARED_FS_ROOT", "/srv/accesscore"))
        candidates = (shared_fs / ".mfa_key", fs_root / ".mfa_key")
        for candidate in candidates:
            try:
                if candidate.exists():
                    material = candidate.read_text().strip()
                    if material:
                        break
            except OSError:
                continue
        if not material:
            generated = secrets.token_urlsafe(64)
            key_path = candidates[0]
            try:
                key_path.parent.mkdir(parents=True, exist_ok=True)
                key_path.write_text(generated)
                os.chmod(key_path, 0o600)
                material = generated
            except OSError as exc:
                raise RuntimeError("Unable to persist MFA encryption key") from exc
    return Fernet(derive_cipher_key(material))


def encrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken:
        # A secret we cannot decrypt is unusable; treat MFA as unconfigured
        logger.warning("mfa_secret_decrypt_failed")
        return None


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat()


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
