# NG-HEADER: Nombre de archivo: s3.py
# NG-HEADER: Ubicación: services/storage/s3.py
# NG-HEADER: Descripción: Acceso al bucket S3 de packing lists (listar, leer, escribir).
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Almacenamiento de objetos para los documentos JSON de rollos.

El resto del backend depende del protocolo ``ObjectStore`` y recibe la
implementación por inyección (``S3ObjectStore`` en producción, un fake en
memoria en tests). boto3 es bloqueante, por eso cada llamada corre en
``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from telas_core.config import Settings


logger = logging.getLogger("telas.storage")


class StorageError(RuntimeError):
    """Falla de E/S contra el almacenamiento de objetos."""


class WriteConflict(StorageError):
    """La escritura condicional (If-Match) perdió contra otro escritor."""


@dataclass
class ObjectInfo:
    key: str
    last_modified: Optional[datetime] = None
    size: int = 0


@dataclass
class StoredObject:
    body: bytes
    etag: Optional[str] = None


class ObjectStore(Protocol):
    async def list_objects(self, prefix: str) -> List[ObjectInfo]: ...

    async def get_object(self, key: str) -> Optional[StoredObject]: ...

    async def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str = "application/json",
        metadata: Optional[Dict[str, str]] = None,
        if_match: Optional[str] = None,
    ) -> Optional[str]: ...


def _error_code(exc: ClientError) -> str:
    try:
        return str(exc.response.get("Error", {}).get("Code") or "")
    except Exception:
        return ""


class S3ObjectStore:
    """Implementación de ``ObjectStore`` sobre un bucket S3."""

    def __init__(self, client: Any, bucket: str, page_size: int = 1000) -> None:
        self.client = client
        self.bucket = bucket
        self.page_size = page_size

    def _list_sync(self, prefix: str) -> List[ObjectInfo]:
        items: List[ObjectInfo] = []
        token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": self.page_size}
            if token:
                params["ContinuationToken"] = token
            resp = self.client.list_objects_v2(**params)
            for it in resp.get("Contents") or []:
                items.append(
                    ObjectInfo(
                        key=it.get("Key") or "",
                        last_modified=it.get("LastModified"),
                        size=int(it.get("Size") or 0),
                    )
                )
            token = resp.get("NextContinuationToken")
            if not token:
                break
        return items

    async def list_objects(self, prefix: str) -> List[ObjectInfo]:
        """Lista todas las claves bajo ``prefix`` (drena la paginación)."""
        try:
            return await asyncio.to_thread(self._list_sync, prefix)
        except (ClientError, BotoCoreError) as e:
            logger.error("list_objects falló prefix=%s: %s", prefix, e)
            raise StorageError(f"No se pudo listar {prefix}: {e}") from e

    def _get_sync(self, key: str) -> Optional[StoredObject]:
        try:
            resp = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in {"NoSuchKey", "404", "NotFound"}:
                return None
            raise
        body = resp["Body"].read()
        return StoredObject(body=body, etag=resp.get("ETag"))

    async def get_object(self, key: str) -> Optional[StoredObject]:
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except (ClientError, BotoCoreError) as e:
            logger.error("get_object falló key=%s: %s", key, e)
            raise StorageError(f"No se pudo leer {key}: {e}") from e

    def _put_sync(
        self,
        key: str,
        body: bytes,
        content_type: str,
        metadata: Optional[Dict[str, str]],
        if_match: Optional[str],
    ) -> Optional[str]:
        params: Dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": body,
            "ContentType": content_type,
            "Metadata": {k: str(v) for k, v in (metadata or {}).items()},
        }
        if if_match:
            params["IfMatch"] = if_match
        resp = self.client.put_object(**params)
        return resp.get("ETag")

    async def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str = "application/json",
        metadata: Optional[Dict[str, str]] = None,
        if_match: Optional[str] = None,
    ) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._put_sync, key, body, content_type, metadata, if_match)
        except ClientError as e:
            if _error_code(e) in {"PreconditionFailed", "412", "ConditionalRequestConflict"}:
                raise WriteConflict(f"El documento {key} cambió desde la lectura") from e
            logger.error("put_object falló key=%s: %s", key, e)
            raise StorageError(f"No se pudo escribir {key}: {e}") from e
        except BotoCoreError as e:
            logger.error("put_object falló key=%s: %s", key, e)
            raise StorageError(f"No se pudo escribir {key}: {e}") from e


def build_store(cfg: Settings) -> S3ObjectStore:
    """Construye el cliente S3 a partir de la configuración."""
    kwargs: Dict[str, Any] = {
        "region_name": cfg.s3_region,
        "config": Config(retries={"max_attempts": 3, "mode": "standard"}),
    }
    if cfg.s3_access_key_id and cfg.s3_secret_access_key:
        kwargs["aws_access_key_id"] = cfg.s3_access_key_id
        kwargs["aws_secret_access_key"] = cfg.s3_secret_access_key
    if cfg.s3_endpoint_url:
        kwargs["endpoint_url"] = cfg.s3_endpoint_url
    client = boto3.client("s3", **kwargs)
    return S3ObjectStore(client, cfg.s3_bucket)
