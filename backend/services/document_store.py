"""
Document Store - Cloud Firestore access for user profiles and hazard records.

Thin async wrapper over the firebase_admin Firestore client. The Firestore
SDK is blocking, so every call runs in a worker thread.

Collections used by the client core:
- user/{uid}: accountType, active, createdAt
- hazards/{id}: type, description, latitude, longitude, reportedBy, createdAt,
  upvotes, downvotes
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from google.cloud.firestore_v1 import Increment
from google.cloud.firestore_v1.base_query import FieldFilter

logger = logging.getLogger(__name__)

# (field, operator, value), e.g. ('status', '==', 1)
QueryFilter = Tuple[str, str, Any]


class DocumentStore:
    """Firestore document access used by the session store and hazard service"""

    def __init__(self, client=None):
        """
        Args:
            client: Firestore client; defaults to the one bound to the
                    initialized default Firebase app
        """
        if client is None:
            from firebase_admin import firestore
            client = firestore.client()
        self.client = client

    async def get_doc(self, collection_id: str, doc_id: str) -> Optional[Dict]:
        """
        Read one document.

        Returns:
            Document fields, or None if the document does not exist
        """
        return await asyncio.to_thread(self._get_doc_sync, collection_id, doc_id)

    async def set_doc(self, collection_id: str, doc_id: str, fields: Dict) -> None:
        """Create or overwrite a document"""
        await asyncio.to_thread(
            lambda: self.client.collection(collection_id).document(doc_id).set(fields)
        )
        logger.debug(f"Firestore set: {collection_id}/{doc_id}")

    async def update_doc(self, collection_id: str, doc_id: str, partial_fields: Dict) -> None:
        """Merge fields into an existing document (fails if it does not exist)"""
        await asyncio.to_thread(
            lambda: self.client.collection(collection_id).document(doc_id).update(partial_fields)
        )
        logger.debug(f"Firestore update: {collection_id}/{doc_id} fields={sorted(partial_fields)}")

    async def increment_field(self, collection_id: str, doc_id: str, field_path: str, amount: int = 1) -> None:
        """Atomically add amount to a numeric field (server-side, no read)"""
        await self.update_doc(collection_id, doc_id, {field_path: Increment(amount)})

    async def add_doc(self, collection_id: str, fields: Dict) -> str:
        """Create a document with a generated ID and return the ID"""
        def _add():
            _, ref = self.client.collection(collection_id).add(fields)
            return ref.id
        return await asyncio.to_thread(_add)

    async def query(self, collection_id: str, filters: Iterable[QueryFilter] = ()) -> List[Dict]:
        """
        Run a filtered collection query.

        Args:
            collection_id: Collection to query
            filters: (field, operator, value) tuples combined with AND

        Returns:
            List of document dicts, each including its ID under 'id'
        """
        return await asyncio.to_thread(self._query_sync, collection_id, list(filters))

    def _get_doc_sync(self, collection_id: str, doc_id: str) -> Optional[Dict]:
        snapshot = self.client.collection(collection_id).document(doc_id).get()
        if not snapshot.exists:
            return None
        return snapshot.to_dict() or {}

    def _query_sync(self, collection_id: str, filters: List[QueryFilter]) -> List[Dict]:
        query = self.client.collection(collection_id)
        for field_path, op, value in filters:
            query = query.where(filter=FieldFilter(field_path, op, value))

        results = []
        for snapshot in query.stream():
            doc = snapshot.to_dict() or {}
            doc['id'] = snapshot.id
            results.append(doc)

        logger.debug(f"Firestore query {collection_id}: {len(results)} documents")
        return results
