"""
Sécurité — JWT et contrôle des fichiers uploadés

L'authentification (login, mots de passe, rôles) est assurée en amont : ce
service se contente de valider le bearer token et d'en lire l'utilisateur et
sa coopérative.
"""
from datetime import datetime, timedelta
from typing import Optional

from jose import jwt

from cocoatrack.config import settings


# ── JWT ───────────────────────────────────────────────────────────────────────

def create_access_token(
    subject: str,
    cooperative_id: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    expire = datetime.utcnow() + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    payload = {"sub": str(subject), "exp": expire, "type": "access"}
    if cooperative_id is not None:
        payload[settings.COOPERATIVE_CLAIM] = str(cooperative_id)
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict:
    """Lève JWTError si invalide ou expiré."""
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


# ── Upload sécurisé ────────────────────────────────────────────────────────────

MAGIC_BYTES: dict[str, bytes] = {
    "zip": b"PK\x03\x04",
    "kmz": b"PK\x03\x04",
}


def validate_file_magic(content: bytes, extension: str) -> bool:
    """Vérifie les magic bytes du fichier uploadé pour contrer les uploads malveillants."""
    ext = extension.lower().lstrip(".")
    magic = MAGIC_BYTES.get(ext)
    if magic is not None:
        return content[:len(magic)] == magic
    # Formats texte : on ignore BOM et espaces initiaux
    head = content[:512].lstrip(b"\xef\xbb\xbf").lstrip()
    if ext == "kml":
        return head.startswith(b"<")
    if ext in ("geojson", "json"):
        return head.startswith(b"{")
    return True
