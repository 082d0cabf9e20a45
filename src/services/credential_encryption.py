"""AES-256-GCM encryption for provider API keys stored by the panel.

Provider API keys are persisted encrypted and only decrypted when they are
pushed into a container's auth-profile document.

Key source precedence:
    1. CLAWPANEL_CREDENTIAL_KEY env var (base64-encoded 32-byte key)
    2. CLAWPANEL_CREDENTIAL_KEY_FILE env var (path to raw key file)
    3. Key file in the platformdirs data dir (auto-generated on first use)

Ciphertext format: versioned JSON envelope with AAD binding, so an envelope
copied onto another provider row fails to decrypt.
"""

import base64
import binascii
import json
import logging
import os
import stat
from pathlib import Path

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.utils.paths import get_data_dir

logger = logging.getLogger(__name__)

KEY_FILENAME = ".clawpanel_key"
KEY_ENV = "CLAWPANEL_CREDENTIAL_KEY"
KEY_FILE_ENV = "CLAWPANEL_CREDENTIAL_KEY_FILE"
_CURRENT_VERSION = 1
_ALGORITHM = "AES-256-GCM"
_REQUIRED_KEY_LENGTH = 32
_NONCE_LENGTH = 12


class CredentialDecryptionError(Exception):
    """Raised when credential decryption fails for any reason."""

    code = "E-5001"


def get_key_source_info() -> dict:
    """Return metadata about the active key source (without revealing the key).

    Returns:
        {"source": "env"|"env_file"|"data_dir", "path": str | None}
    """
    if os.environ.get(KEY_ENV, "").strip():
        return {"source": "env", "path": None}

    env_key_file = os.environ.get(KEY_FILE_ENV, "").strip()
    if env_key_file:
        return {"source": "env_file", "path": env_key_file}

    return {"source": "data_dir", "path": str(get_data_dir() / KEY_FILENAME)}


def _check_length(key: bytes, origin: str) -> bytes:
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise ValueError(
            f"{origin} has invalid length {len(key)} (expected {_REQUIRED_KEY_LENGTH})"
        )
    return key


def get_or_create_key(key_dir: str | Path | None = None) -> bytes:
    """Load or generate the 32-byte AES-256 encryption key.

    Args:
        key_dir: Directory for the auto-generated key file. Defaults to
            the panel data directory.

    Returns:
        32-byte encryption key.

    Raises:
        ValueError: If key has invalid length from any source, or invalid base64.
    """
    env_key = os.environ.get(KEY_ENV, "").strip()
    if env_key:
        try:
            key = base64.b64decode(env_key, validate=True)
        except binascii.Error as e:
            raise ValueError(f"{KEY_ENV} contains invalid base64: {e}") from e
        return _check_length(key, KEY_ENV)

    env_key_file = os.environ.get(KEY_FILE_ENV, "").strip()
    if env_key_file:
        path = Path(env_key_file)
        if path.is_symlink():
            raise ValueError(f"{KEY_FILE_ENV} is a symlink: {path}")
        if not path.is_file():
            raise ValueError(f"{KEY_FILE_ENV} is not a regular file: {path}")
        return _check_length(path.read_bytes(), f"Key file {path}")

    directory = Path(key_dir) if key_dir else get_data_dir()
    directory.mkdir(parents=True, exist_ok=True)
    key_path = directory / KEY_FILENAME

    if key_path.exists():
        key = _check_length(key_path.read_bytes(), f"Key file {key_path}")
        mode = stat.S_IMODE(key_path.stat().st_mode)
        if mode & (stat.S_IRGRP | stat.S_IWGRP | stat.S_IROTH | stat.S_IWOTH):
            logger.warning("Key file %s has permissions %o, recommend chmod 600", key_path, mode)
        return key

    key = os.urandom(_REQUIRED_KEY_LENGTH)
    try:
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        try:
            os.write(fd, key)
        finally:
            os.close(fd)
    except FileExistsError:
        # Another process created the file first.
        return _check_length(key_path.read_bytes(), f"Key file {key_path}")

    logger.info("Generated new encryption key at %s", key_path)
    return key


def encrypt_secret(secret: str, key: bytes, aad: str = "") -> str:
    """Encrypt a secret string to a versioned JSON envelope string.

    Args:
        secret: Plaintext secret (e.g. a provider API key).
        key: 32-byte AES-256 key.
        aad: Additional authenticated data (e.g. 'provider:<id>').

    Returns:
        JSON string envelope: {"v":1, "alg":"AES-256-GCM", "nonce":"<b64>", "ct":"<b64>"}.

    Raises:
        ValueError: If key is not exactly 32 bytes.
    """
    _check_length(key, "Encryption key")
    nonce = os.urandom(_NONCE_LENGTH)
    plaintext = json.dumps({"secret": secret}).encode("utf-8")
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, aad.encode("utf-8") if aad else None)
    return json.dumps({
        "v": _CURRENT_VERSION,
        "alg": _ALGORITHM,
        "nonce": base64.b64encode(nonce).decode("ascii"),
        "ct": base64.b64encode(ciphertext).decode("ascii"),
    })


def decrypt_secret(encrypted: str, key: bytes, aad: str = "") -> str:
    """Decrypt an envelope produced by encrypt_secret.

    Raises:
        CredentialDecryptionError: If decryption fails for any reason,
            including wrong key length or mismatched AAD.
    """
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise CredentialDecryptionError(
            f"Decryption key must be exactly {_REQUIRED_KEY_LENGTH} bytes (got {len(key)})"
        )

    try:
        envelope = json.loads(encrypted)
    except (json.JSONDecodeError, TypeError) as e:
        raise CredentialDecryptionError(f"Invalid envelope format: {e}") from e
    if not isinstance(envelope, dict):
        raise CredentialDecryptionError("Envelope is not a JSON object")

    version = envelope.get("v")
    if version != _CURRENT_VERSION:
        raise CredentialDecryptionError(
            f"Unsupported envelope version {version} (expected {_CURRENT_VERSION})"
        )
    alg = envelope.get("alg")
    if alg != _ALGORITHM:
        raise CredentialDecryptionError(f"Unsupported algorithm '{alg}' (expected '{_ALGORITHM}')")

    try:
        nonce = base64.b64decode(envelope["nonce"], validate=True)
        ciphertext = base64.b64decode(envelope["ct"], validate=True)
    except (KeyError, TypeError, binascii.Error) as e:
        raise CredentialDecryptionError(f"Malformed envelope fields: {e}") from e
    if len(nonce) != _NONCE_LENGTH:
        raise CredentialDecryptionError(f"Invalid nonce length {len(nonce)} (expected {_NONCE_LENGTH})")

    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, aad.encode("utf-8") if aad else None)
        payload = json.loads(plaintext.decode("utf-8"))
    except Exception as e:
        raise CredentialDecryptionError(f"Decryption failed: {e}") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("secret"), str):
        raise CredentialDecryptionError("Decrypted payload has no secret")
    return payload["secret"]


def provider_aad(provider_id: str) -> str:
    """AAD string binding an envelope to one provider row."""
    return f"provider:{provider_id}"
