"""
Stockage des fichiers d'import — Local, S3, MinIO
Strategy pattern : même interface quel que soit le backend.
Les clés sont adressées par contenu : <coopérative>/<sha256>/<nom de fichier>.
"""
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Optional
from urllib.parse import quote

import boto3
from botocore.exceptions import ClientError

from cocoatrack.config import Settings, settings as default_settings


def build_storage_key(cooperative_id: Optional[str], sha256: str, filename: str) -> str:
    scope = cooperative_id or "no-cooperative"
    return f"{scope}/{sha256}/{Path(filename).name}"


class StorageBackend(ABC):
    @abstractmethod
    async def save(self, file_obj: BinaryIO, key: str) -> str:
        """Sauvegarde un fichier et retourne la clé de stockage."""

    @abstractmethod
    async def read(self, key: str) -> bytes:
        """Lit le contenu d'un fichier."""

    @abstractmethod
    async def get_url(self, key: str, expires_in: int = 3600) -> str:
        """Génère une URL de téléchargement (signée ou directe)."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Supprime un fichier du stockage."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Indique si la clé existe déjà (upload idempotent)."""


class LocalStorage(StorageBackend):
    """Stockage local — développement, tests et petits déploiements."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or default_settings.UPLOAD_DIR)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Clé de stockage hors du répertoire racine : {key}")
        return path

    async def save(self, file_obj: BinaryIO, key: str) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(file_obj.read())
        return key

    async def read(self, key: str) -> bytes:
        with open(self._path(key), "rb") as f:
            return f.read()

    async def get_url(self, key: str, expires_in: int = 3600) -> str:
        # En local, l'API sert le fichier directement
        return f"/api/v1/parcelles/import/file?key={quote(key, safe='')}"

    async def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            os.remove(path)

    async def exists(self, key: str) -> bool:
        return self._path(key).exists()


class S3Storage(StorageBackend):
    """Stockage AWS S3 / MinIO — production."""

    def __init__(self, config: Settings = default_settings):
        kwargs = {
            "aws_access_key_id": config.AWS_ACCESS_KEY_ID,
            "aws_secret_access_key": config.AWS_SECRET_ACCESS_KEY,
            "region_name": config.AWS_REGION,
        }
        if config.S3_ENDPOINT_URL:
            kwargs["endpoint_url"] = config.S3_ENDPOINT_URL
        self.client = boto3.client("s3", **kwargs)
        self.bucket = config.S3_BUCKET_IMPORTS

    async def save(self, file_obj: BinaryIO, key: str) -> str:
        self.client.upload_fileobj(file_obj, self.bucket, key)
        return key

    async def read(self, key: str) -> bytes:
        response = self.client.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

    async def get_url(self, key: str, expires_in: int = 3600) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    async def delete(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)

    async def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True


def get_storage() -> StorageBackend:
    if default_settings.STORAGE_BACKEND in ("s3", "minio"):
        return S3Storage()
    return LocalStorage()
