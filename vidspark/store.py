"""
Durable record store for videos, bulk jobs and their satellites.

Every record is a JSON document with a monotonically increasing `version`.
Writers never send whole documents built from a stale snapshot: they send a
*patch* of dotted paths (`imageStatus.2.progress`) which is applied to the
current document and written back with a compare-and-set on `version`.
Two workers patching disjoint sub-fields of the same video therefore never
lose each other's writes, they only retry.

Backends:
  SupabaseStore — one table per collection (id text, data jsonb, version int)
  MemoryStore   — thread-safe in-process dict (local runs, tests)
"""

import os
import copy
import time
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional
from uuid import uuid4

from supabase import create_client, Client

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

MAX_CAS_RETRIES = int(os.getenv("STORE_MAX_CAS_RETRIES", "10"))
CAS_RETRY_DELAY = 0.05  # seconds, multiplied by the attempt number


class DocumentNotFoundError(LookupError):
    """Raised when a patch targets a document that does not exist."""


class StoreConflictError(RuntimeError):
    """Raised when compare-and-set keeps losing to concurrent writers."""


@dataclass
class Document:
    id: str
    data: dict
    version: int = 0


def now_ms() -> int:
    """Current time as epoch milliseconds (the unit of every record timestamp)."""
    return int(time.time() * 1000)


def apply_patch(data: dict, patch: dict[str, Any]) -> dict:
    """
    Return a copy of `data` with every dotted path in `patch` set.

    Missing (or non-dict) intermediate nodes are replaced by empty dicts,
    so `{"scenes.3.imageUrl": url}` works on a document with no scene 3 yet.
    """
    result = copy.deepcopy(data)
    for path, value in patch.items():
        keys = path.split(".")
        node = result
        for key in keys[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        node[keys[-1]] = copy.deepcopy(value)
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Base store
# ═════════════════════════════════════════════════════════════════════════════

class RecordStore:
    """
    Backend-independent document operations.

    Subclasses implement `get`, `create` and `_compare_and_set`;
    `mutate` and `update` are built on top of them.
    """

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        raise NotImplementedError

    def create(self, collection: str, data: dict, doc_id: Optional[str] = None) -> str:
        raise NotImplementedError

    def _compare_and_set(self, collection: str, doc_id: str, version: int, data: dict) -> bool:
        raise NotImplementedError

    def mutate(
        self,
        collection: str,
        doc_id: str,
        fn: Callable[[Document], Optional[dict]],
        max_retries: int = MAX_CAS_RETRIES,
    ) -> Document:
        """
        Optimistic read-modify-write.

        `fn` receives the current document and returns a patch, or None/{}
        for "nothing to write". On a version conflict the document is re-read
        and `fn` is called again against the fresh state.

        Returns the document as written (or as read, when `fn` wrote nothing).
        """
        for attempt in range(1, max_retries + 1):
            doc = self.get(collection, doc_id)
            if doc is None:
                raise DocumentNotFoundError(f"{collection}/{doc_id} not found")

            patch = fn(doc)
            if not patch:
                return doc

            new_data = apply_patch(doc.data, patch)
            if self._compare_and_set(collection, doc_id, doc.version, new_data):
                return Document(id=doc_id, data=new_data, version=doc.version + 1)

            logger.debug(f"CAS conflict on {collection}/{doc_id} (attempt {attempt}/{max_retries})")
            time.sleep(CAS_RETRY_DELAY * attempt)

        raise StoreConflictError(
            f"{collection}/{doc_id}: gave up after {max_retries} conflicting writes"
        )

    def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> Document:
        """Apply a dotted-path patch to the current document."""
        return self.mutate(collection, doc_id, lambda _doc: patch)


# ═════════════════════════════════════════════════════════════════════════════
# In-memory backend
# ═════════════════════════════════════════════════════════════════════════════

class MemoryStore(RecordStore):
    """Process-local store. Same semantics as SupabaseStore, no persistence."""

    def __init__(self):
        self._lock = threading.Lock()
        self._collections: dict[str, dict[str, Document]] = {}

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            if doc is None:
                return None
            return Document(id=doc.id, data=copy.deepcopy(doc.data), version=doc.version)

    def create(self, collection: str, data: dict, doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or str(uuid4())
        with self._lock:
            self._collections.setdefault(collection, {})[doc_id] = Document(
                id=doc_id, data=copy.deepcopy(data), version=0
            )
        return doc_id

    def _compare_and_set(self, collection: str, doc_id: str, version: int, data: dict) -> bool:
        with self._lock:
            current = self._collections.get(collection, {}).get(doc_id)
            if current is None or current.version != version:
                return False
            self._collections[collection][doc_id] = Document(
                id=doc_id, data=copy.deepcopy(data), version=version + 1
            )
            return True

    def list(self, collection: str) -> list[Document]:
        with self._lock:
            return [
                Document(id=d.id, data=copy.deepcopy(d.data), version=d.version)
                for d in self._collections.get(collection, {}).values()
            ]


# ═════════════════════════════════════════════════════════════════════════════
# Supabase backend
# ═════════════════════════════════════════════════════════════════════════════

class SupabaseStore(RecordStore):
    """
    Documents stored as rows of `{id, data, version, created_at, updated_at}`,
    one table per collection. Writes bypass RLS through the service role key.
    """

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            url = os.getenv("SUPABASE_URL", "")
            key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
            if not url or not key:
                raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            self._client = create_client(url, key)
        return self._client

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        result = (
            self.client.table(collection)
            .select("id,data,version")
            .eq("id", doc_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        row = result.data[0]
        return Document(id=row["id"], data=row.get("data") or {}, version=row.get("version") or 0)

    def create(self, collection: str, data: dict, doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or str(uuid4())
        self.client.table(collection).insert({
            "id": doc_id,
            "data": data,
            "version": 0,
        }).execute()
        logger.info(f"Created {collection}/{doc_id}")
        return doc_id

    def _compare_and_set(self, collection: str, doc_id: str, version: int, data: dict) -> bool:
        result = (
            self.client.table(collection)
            .update({"data": data, "version": version + 1})
            .eq("id", doc_id)
            .eq("version", version)
            .execute()
        )
        return bool(result.data)


def build_store() -> RecordStore:
    """Pick the backend named by RECORD_STORE (default: supabase)."""
    backend = os.getenv("RECORD_STORE", "supabase").lower()
    if backend == "memory":
        logger.warning("Using in-memory record store — data is lost on restart")
        return MemoryStore()
    return SupabaseStore()
