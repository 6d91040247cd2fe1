from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from solders.keypair import Keypair

from dropswarm.domain.models import Credential

logger = logging.getLogger(__name__)

SECRET_KEY_LENGTH = 64


def count_keys(directory: str | Path) -> int:
    path = Path(directory)
    if not path.is_dir():
        return 0
    return len(list(path.glob("*.json")))


def credential_from_secret(secret: list[int] | bytes, *, api_key: str | None = None, source: str | None = None) -> Credential:
    """
    Build a credential from a 64-byte keypair secret (32-byte seed followed by the public key).

    The public half must be the key derived from the seed.
    """
    raw = bytes(secret)
    if len(raw) != SECRET_KEY_LENGTH:
        raise ValueError(f"Secret key must be {SECRET_KEY_LENGTH} bytes; got {len(raw)}")
    keypair = Keypair.from_seed(raw[:32])
    if bytes(keypair.pubkey()) != raw[32:]:
        raise ValueError(f"Public key does not match the secret (derived {keypair.pubkey()})")
    return Credential(secret_key=bytes(keypair), pubkey=str(keypair.pubkey()), api_key=api_key, source=source)


def _parse_key_file(doc: Any, source: str) -> Credential:
    if isinstance(doc, list):
        return credential_from_secret(doc, source=source)
    if isinstance(doc, dict) and "secret_key" in doc:
        api_key = doc.get("api_key")
        return credential_from_secret(doc["secret_key"], api_key=str(api_key) if api_key else None, source=source)
    raise ValueError("Key file must be a JSON array of bytes or an object with 'secret_key'")


def load_keys(directory: str | Path) -> list[Credential]:
    """
    Load every `*.json` keypair in `directory`, sorted by file name.

    Unreadable files are logged and skipped; an empty result is left for the caller to treat as fatal.
    """
    path = Path(directory)
    if not path.is_dir():
        logger.error("Keys directory not found: %s", path)
        return []

    credentials: list[Credential] = []
    for file in sorted(path.glob("*.json")):
        try:
            with file.open("r", encoding="utf-8") as f:
                credentials.append(_parse_key_file(json.load(f), file.name))
        except (OSError, ValueError) as e:
            logger.error(f"Skipping key file {file.name}: {e}")
    logger.info("Loaded %d credential(s) from %s", len(credentials), path)
    return credentials
