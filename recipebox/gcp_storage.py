from __future__ import annotations

import logging
import os
import uuid
from contextlib import contextmanager
from typing import IO, Iterator, List, Optional, Sequence

from google.api_core import exceptions as gcloud_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import firestore, storage
from google.cloud.firestore_v1.base_query import FieldFilter
from werkzeug.utils import secure_filename

from .storage import DataGateway, Filter, GatewayError, ImageStorage, Row, StoredImage, row_matches

logger = logging.getLogger(__name__)


@contextmanager
def _backend_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (gcloud_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError) as exc:
        logger.error("Firestore %s failed: %s", action, exc)
        raise GatewayError(f"Failed to {action}: {exc}") from exc


class FirestoreGateway(DataGateway):
    """GCP backed data gateway using Cloud Firestore collections as tables.

    Equality and null filters are pushed down to Firestore. Pattern filters
    (``ilike``) have no Firestore equivalent, so they are evaluated on the
    streamed documents and ``limit`` is applied afterwards.
    """

    def __init__(self, *, project: Optional[str] = None, collection_prefix: str = "") -> None:
        self._project = project
        self._collection_prefix = collection_prefix
        self._firestore_client = firestore.Client(project=project)

    @classmethod
    def from_env(cls) -> "FirestoreGateway":
        """Build a gateway from environment variables."""

        project = os.environ.get("GCP_PROJECT")
        collection_prefix = os.environ.get("RECIPEBOX_COLLECTION_PREFIX", "")
        return cls(project=project, collection_prefix=collection_prefix)

    def _collection(self, name: str):
        return self._firestore_client.collection(f"{self._collection_prefix}{name}")

    def select(
        self,
        collection: str,
        *,
        where: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        document_ids = [value for field_name, op, value in where if field_name == "id" and op == "=="]
        if document_ids:
            return self._select_by_id(collection, document_ids, where, limit)

        query = self._collection(collection)
        client_side: List[Filter] = []

        for field_name, op, value in where:
            if op == "==":
                query = query.where(filter=FieldFilter(field_name, "==", value))
            elif op == "is_null" and value:
                query = query.where(filter=FieldFilter(field_name, "==", None))
            else:
                client_side.append((field_name, op, value))

        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        if limit is not None and not client_side:
            query = query.limit(limit)

        with _backend_errors(f"query {collection}"):
            rows = [self._snapshot_to_row(doc) for doc in query.stream()]

        if client_side:
            rows = [row for row in rows if row_matches(row, client_side)]
            if limit is not None:
                rows = rows[:limit]
        return rows

    def _select_by_id(
        self, collection: str, document_ids: List[str], where: Sequence[Filter], limit: Optional[int]
    ) -> List[Row]:
        # The document id is not a stored field, so it is looked up directly.
        try:
            row = self.get(collection, document_ids[0])
        except KeyError:
            return []
        rows = [row] if row_matches(row, where) else []
        return rows[:limit] if limit is not None else rows

    def get(self, collection: str, row_id: str) -> Row:
        with _backend_errors(f"read {collection}"):
            snapshot = self._collection(collection).document(row_id).get()

        if not snapshot.exists:
            raise KeyError(f"{collection} row '{row_id}' does not exist.")
        return self._snapshot_to_row(snapshot)

    def insert(self, collection: str, rows: Sequence[Row]) -> List[Row]:
        inserted: List[Row] = []
        with _backend_errors(f"insert into {collection}"):
            for row in rows:
                doc = {key: value for key, value in row.items() if key != "id"}
                doc.setdefault("created_at", firestore.SERVER_TIMESTAMP)

                doc_ref = self._collection(collection).document(row.get("id") or None)
                doc_ref.set(doc)
                inserted.append(self._snapshot_to_row(doc_ref.get()))
        return inserted

    def update(self, collection: str, values: Row, *, where: Sequence[Filter]) -> int:
        matches = self.select(collection, where=where)
        with _backend_errors(f"update {collection}"):
            for row in matches:
                self._collection(collection).document(row["id"]).update(dict(values))
        return len(matches)

    def delete(self, collection: str, *, where: Sequence[Filter]) -> int:
        matches = self.select(collection, where=where)
        with _backend_errors(f"delete from {collection}"):
            for row in matches:
                self._collection(collection).document(row["id"]).delete()
        return len(matches)

    def count(self, collection: str, *, where: Sequence[Filter] = ()) -> int:
        return len(self.select(collection, where=where))

    @staticmethod
    def _snapshot_to_row(snapshot) -> Row:
        data = snapshot.to_dict() or {}
        data["id"] = snapshot.id
        return data


class CloudStorageImages(ImageStorage):
    """Recipe and step images stored in a Cloud Storage bucket."""

    def __init__(self, *, bucket_name: str, project: Optional[str] = None, prefix: str = "recipes") -> None:
        self._prefix = prefix
        self._storage_client = storage.Client(project=project)
        self._bucket = self._storage_client.bucket(bucket_name)

    @classmethod
    def from_env(cls) -> Optional["CloudStorageImages"]:
        bucket_name = os.environ.get("GCS_BUCKET")
        if not bucket_name:
            return None
        return cls(bucket_name=bucket_name, project=os.environ.get("GCP_PROJECT"))

    def upload(self, stream: IO[bytes], *, filename: str, content_type: Optional[str]) -> StoredImage:
        blob_name = self._build_blob_name(filename)
        blob = self._bucket.blob(blob_name)

        stream.seek(0)
        with _backend_errors("upload image"):
            blob.upload_from_file(stream, content_type=content_type)
        # Image rows keep the URL, so it must not expire like a signed URL.
        return StoredImage(url=blob.public_url, storage_path=blob_name)

    def delete(self, storage_path: str) -> None:
        if not storage_path:
            return

        blob = self._bucket.blob(storage_path)

        try:
            blob.delete()
        except gcloud_exceptions.NotFound:
            # The blob may already have been removed manually; ignore.
            pass

    def _build_blob_name(self, filename: str) -> str:
        safe = secure_filename(filename) or "image"
        unique = uuid.uuid4().hex
        return f"{self._prefix}/{unique}_{safe}"


__all__ = ["CloudStorageImages", "FirestoreGateway"]
