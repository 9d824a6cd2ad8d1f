import json
import logging
from typing import Optional, Tuple

from fastapi.concurrency import run_in_threadpool
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
from errors import StartupError
from schemas import PredictionRecord

logger = logging.getLogger(__name__)


def load_credentials(path: str, url: Optional[str] = None, name: Optional[str] = None) -> Tuple[str, str]:
    """Read ``database_url``/``database_name`` from the credentials file.

    Explicit ``url``/``name`` (from the environment) win over the file. The file
    is still required: a deployment without it is misconfigured.
    """
    try:
        with open(path, encoding="utf-8") as f:
            creds = json.load(f)
    except (OSError, ValueError) as e:
        raise StartupError(f"Cannot load credentials file {path}: {e}") from e
    if not isinstance(creds, dict):
        raise StartupError(f"Credentials file {path} must contain a JSON object")

    url = url or creds.get("database_url")
    name = name or creds.get("database_name")
    if not url or not name:
        raise StartupError(f"Credentials file {path} is missing database_url or database_name")
    return url, name


def create_document(db: Database, collection_name: str, document_id: str, data: dict) -> str:
    """Keyed put: ``collection/document_id`` is set to ``data``."""
    db[collection_name].replace_one({"_id": document_id}, dict(data), upsert=True)
    return document_id


class PredictionStore:
    """Write-only access to the predictions collection."""

    def __init__(self, db: Database, collection_name: str = config.PREDICTIONS_COLLECTION, client=None):
        self.db = db
        self.collection_name = collection_name
        self._client = client

    async def save(self, record: PredictionRecord) -> str:
        return await run_in_threadpool(
            create_document, self.db, self.collection_name, record.id, record.document()
        )

    def close(self):
        if self._client is not None:
            self._client.close()


def connect(
    credentials_path: str = config.CREDENTIALS_PATH,
    url: Optional[str] = config.DATABASE_URL,
    name: Optional[str] = config.DATABASE_NAME,
    collection_name: str = config.PREDICTIONS_COLLECTION,
) -> PredictionStore:
    url, name = load_credentials(credentials_path, url, name)
    client = MongoClient(url, serverSelectionTimeoutMS=5000)
    try:
        client.admin.command("ping")
    except PyMongoError as e:
        client.close()
        raise StartupError(f"Cannot reach document store: {e}") from e

    logger.info("Connected to document store, database=%s collection=%s", name, collection_name)
    return PredictionStore(client[name], collection_name, client=client)
