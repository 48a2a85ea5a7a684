import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo.errors import PyMongoError

from shared.utils import DurableStoreUnavailable

logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex


class WriteBatch:
    """
    Writes queued in memory and applied in queue order on commit.
    The batch is not atomic: a failure stops the commit and earlier
    writes stay applied.
    """

    def __init__(self, db):
        self.db = db
        self._ops: List[Tuple[str, str, tuple, dict]] = []

    def __len__(self) -> int:
        return len(self._ops)

    def add(self, collection: str, data: dict, doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or data.get("_id") or new_id()
        self._ops.append((collection, "insert_one", ({**data, "_id": doc_id},), {}))
        return doc_id

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self._ops.append(
            (collection, "replace_one", ({"_id": doc_id}, {**data, "_id": doc_id}), {"upsert": True})
        )

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        self._ops.append((collection, "update_one", ({"_id": doc_id}, {"$set": fields}), {}))

    async def commit(self) -> int:
        written = 0
        for collection, method, args, kwargs in self._ops:
            try:
                await getattr(self.db[collection], method)(*args, **kwargs)
            except PyMongoError as e:
                logger.error(f"Batch commit failed on {collection} after {written} writes: {e}")
                raise DurableStoreUnavailable() from e
            written += 1
        self._ops = []
        return written


class DocumentStore:
    """
    Collection-oriented access to MongoDB: get-by-id, equality queries,
    add, replace, merge-update and batched writes. Last write wins per document.
    """

    def __init__(self, db):
        self.db = db

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        try:
            return await self.db[collection].find_one({"_id": doc_id})
        except PyMongoError as e:
            logger.error(f"Read of {collection}/{doc_id} failed: {e}")
            raise DurableStoreUnavailable() from e

    async def get_many(self, collection: str, doc_ids: Iterable[str]) -> Dict[str, dict]:
        ids = list(dict.fromkeys(doc_ids))
        if not ids:
            return {}
        try:
            cursor = self.db[collection].find({"_id": {"$in": ids}})
            return {doc["_id"]: doc async for doc in cursor}
        except PyMongoError as e:
            logger.error(f"Batch read of {collection} failed: {e}")
            raise DurableStoreUnavailable() from e

    async def query(
        self,
        collection: str,
        filters: Dict[str, Any],
        limit: int = 0,
        sort: Optional[List[Tuple[str, int]]] = None,
    ) -> List[dict]:
        """Documents whose fields equal the given values."""
        try:
            cursor = self.db[collection].find(filters, sort=sort, limit=limit)
            return [doc async for doc in cursor]
        except PyMongoError as e:
            logger.error(f"Query on {collection} failed: {e}")
            raise DurableStoreUnavailable() from e

    async def first(self, collection: str, filters: Dict[str, Any]) -> Optional[dict]:
        docs = await self.query(collection, filters, limit=1)
        return docs[0] if docs else None

    async def add(self, collection: str, data: dict, doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or data.get("_id") or new_id()
        try:
            await self.db[collection].insert_one({**data, "_id": doc_id})
        except PyMongoError as e:
            logger.error(f"Insert into {collection} failed: {e}")
            raise DurableStoreUnavailable() from e
        return doc_id

    async def set(self, collection: str, doc_id: str, data: dict) -> None:
        try:
            await self.db[collection].replace_one({"_id": doc_id}, {**data, "_id": doc_id}, upsert=True)
        except PyMongoError as e:
            logger.error(f"Write of {collection}/{doc_id} failed: {e}")
            raise DurableStoreUnavailable() from e

    async def update(self, collection: str, doc_id: str, fields: dict) -> bool:
        try:
            result = await self.db[collection].update_one({"_id": doc_id}, {"$set": fields})
        except PyMongoError as e:
            logger.error(f"Update of {collection}/{doc_id} failed: {e}")
            raise DurableStoreUnavailable() from e
        return result.matched_count > 0

    def batch(self) -> WriteBatch:
        return WriteBatch(self.db)

    async def ping(self) -> bool:
        try:
            await self.db.command("ping")
            return True
        except PyMongoError:
            return False
