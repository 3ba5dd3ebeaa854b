from __future__ import annotations

import base64
import hashlib
import os
from typing import Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from finledger.db.models import ExternalCredential
from finledger.utils.time import utcnow

SECRET_ENV = "APP_SECRET_KEY"


class CredentialError(Exception):
    pass


def _secret() -> Optional[str]:
    value = (os.environ.get(SECRET_ENV) or "").strip()
    return value or None


def secret_key_available() -> bool:
    return _secret() is not None


def _cipher() -> Fernet:
    # Any passphrase works: it is stretched to the 32-byte key Fernet expects.
    secret = _secret()
    if secret is None:
        raise CredentialError(f"{SECRET_ENV} must be set to read or write provider credentials.")
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest()))


def encrypt_value(plaintext: str) -> str:
    return _cipher().encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_value(token: str) -> str:
    try:
        return _cipher().decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken as e:
        raise CredentialError(f"Stored credential cannot be decrypted with the current {SECRET_ENV}.") from e


def mask_secret(value: Optional[str], *, keep_last: int = 4) -> str:
    text = "" if value is None else str(value)
    if not text:
        return "-"
    keep = max(0, int(keep_last))
    tail = text[-keep:] if keep and len(text) >= keep else text
    return "*" * 10 + tail


def _row(session: Session, connection_id: int, key: str) -> Optional[ExternalCredential]:
    return (
        session.query(ExternalCredential)
        .filter(ExternalCredential.connection_id == connection_id, ExternalCredential.key == key)
        .one_or_none()
    )


def upsert_credential(session: Session, *, connection_id: int, key: str, plaintext: str) -> ExternalCredential:
    """Store (or rotate) one encrypted credential value for a provider connection."""
    key = (key or "").strip()
    if not key:
        raise CredentialError("Credential key is required.")
    token = encrypt_value(plaintext)
    now = utcnow()
    row = _row(session, connection_id, key)
    if row is None:
        row = ExternalCredential(
            connection_id=connection_id, key=key, value_encrypted=token, created_at=now, updated_at=now
        )
        session.add(row)
    else:
        row.value_encrypted = token
        row.updated_at = now
    session.flush()
    return row


def get_credential(session: Session, *, connection_id: int, key: str) -> Optional[str]:
    row = _row(session, connection_id, key)
    if row is None or not secret_key_available():
        return None
    return decrypt_value(row.value_encrypted)


def missing_credentials(session: Session, *, connection_id: int, keys: Iterable[str]) -> list[str]:
    stored = {
        k
        for (k,) in session.query(ExternalCredential.key).filter(ExternalCredential.connection_id == connection_id)
    }
    return [k for k in keys if k not in stored]


def load_credentials(session: Session, *, connection_id: int, keys: Iterable[str]) -> Optional[dict[str, str]]:
    """
    All of `keys`, decrypted, or None when any is missing, blank or undecryptable.
    """
    out: dict[str, str] = {}
    for key in keys:
        try:
            value = get_credential(session, connection_id=connection_id, key=key)
        except CredentialError:
            return None
        if value is None or not value.strip():
            return None
        out[key] = value
    return out
