from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken
from flask import current_app


# ---------------------------------------------------------------------------
# Assignment encryption-at-rest
#
# Who gifts whom stays secret until the reveal, so the recipient fid is never
# written to chain_participants in plaintext. The key comes from
# ASSIGNMENT_ENC_KEY, or is derived from SECRET_KEY when that is unset.
#
# NOTE: anyone holding the server secrets can still decrypt. This only keeps
# assignments out of casual DB inspection and dumps.
# ---------------------------------------------------------------------------


def _assignment_fernet() -> Fernet:
    explicit = (current_app.config.get("ASSIGNMENT_ENC_KEY") or "").strip()
    if explicit:
        # urlsafe base64-encoded 32-byte key
        return Fernet(explicit.encode("utf-8"))

    secret = (current_app.config.get("SECRET_KEY") or "").encode("utf-8")
    digest = hashlib.sha256(b"santachain-assignments|" + secret).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_recipient(recipient_fid: int) -> str:
    """Encrypt recipient fid -> ciphertext token (string)."""
    token = _assignment_fernet().encrypt(str(int(recipient_fid)).encode("utf-8"))
    return token.decode("utf-8")


def decrypt_recipient(token: str) -> int:
    """Decrypt ciphertext token -> recipient fid. Raises ValueError on failure."""
    try:
        raw = _assignment_fernet().decrypt(token.encode("utf-8"))
        return int(raw.decode("utf-8"))
    except (InvalidToken, ValueError, TypeError) as e:
        raise ValueError("Invalid assignment token") from e
