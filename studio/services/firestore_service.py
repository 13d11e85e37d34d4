"""
Firestore Service Layer

This module provides a thin, typed wrapper over Firestore used by the
persistence collaborator. It uses the Firebase Admin SDK and validates
documents with the Pydantic models defined in studio.models.

The Firestore client is synchronous, so every call that reaches the backend
runs in the default executor and never blocks the event loop.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Dict, List, Optional, Type, TypeVar

import firebase_admin
from firebase_admin import firestore, initialize_app
from google.cloud.firestore import Client, DocumentReference, Query

import config
from studio.models import COLLECTION_MODELS, FirestoreBaseModel

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Type variable for generic model operations
T = TypeVar("T", bound=FirestoreBaseModel)


def to_document(model: FirestoreBaseModel) -> Dict[str, Any]:
    """Serialize a model for storage; the id lives in the document path."""
    return model.model_dump(mode="json", exclude={"id"})


class FirestoreService:
    """
    Service class for Firestore operations with type safety and Pydantic integration.
    """

    def __init__(
        self,
        database_name: str = config.FIRESTORE_DATABASE,
        client: Optional[Client] = None,
    ):
        """
        Initialize the Firestore service.

        Args:
            database_name: Name of the Firestore database to connect to
            client: Optional Firestore client, mostly for tests
        """
        self.database_name = database_name
        self._client: Optional[Client] = client

    @property
    def client(self) -> Client:
        """Get or create the Firestore client."""
        if self._client is None:
            # Initialize Firebase Admin SDK if not already initialized
            try:
                app = initialize_app()
            except ValueError:
                # App already exists, get it
                app = firebase_admin.get_app()

            self._client = firestore.client(app, database=self.database_name)

        return self._client

    async def _run(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    def get_collection_ref(self, collection_name: str):
        """Get a reference to a Firestore collection."""
        return self.client.collection(collection_name)

    def get_document_ref(
        self, collection_name: str, document_id: str
    ) -> DocumentReference:
        """Get a reference to a specific document."""
        return self.client.collection(collection_name).document(document_id)

    def _to_model(
        self,
        collection_name: str,
        document_id: str,
        data: Dict[str, Any],
        model_class: Optional[Type[T]],
    ):
        data["id"] = document_id
        model_class = model_class or COLLECTION_MODELS.get(collection_name)
        if model_class:
            return model_class(**data)
        return data

    async def create_document(
        self, collection_name: str, model: FirestoreBaseModel
    ) -> str:
        """
        Create a document keyed by the model's id.

        Raises:
            google.api_core.exceptions.AlreadyExists: if the document exists
        """
        try:
            doc_ref = self.get_document_ref(collection_name, model.id)
            await self._run(doc_ref.create, to_document(model))

            logger.info(f"Created document {model.id} in {collection_name}")
            return model.id

        except Exception as e:
            logger.error(f"Failed to create document in {collection_name}: {str(e)}")
            raise

    async def set_document(
        self, collection_name: str, model: FirestoreBaseModel
    ) -> bool:
        """Write the full document, replacing any previous version."""
        try:
            doc_ref = self.get_document_ref(collection_name, model.id)
            await self._run(doc_ref.set, to_document(model))

            logger.info(f"Wrote document {model.id} in {collection_name}")
            return True

        except Exception as e:
            logger.error(
                f"Failed to write document {model.id} in {collection_name}: {str(e)}"
            )
            raise

    async def get_document(
        self,
        collection_name: str,
        document_id: str,
        model_class: Optional[Type[T]] = None,
    ) -> Optional[T]:
        """
        Get a document by ID.

        Args:
            collection_name: Name of the collection
            document_id: ID of the document to retrieve
            model_class: Optional Pydantic model class to validate the data

        Returns:
            Document data as Pydantic model instance or None if not found
        """
        try:
            doc_ref = self.get_document_ref(collection_name, document_id)
            doc = await self._run(doc_ref.get)

            if not doc.exists:
                return None

            return self._to_model(collection_name, doc.id, doc.to_dict(), model_class)

        except Exception as e:
            logger.error(
                f"Failed to get document {document_id} from {collection_name}: {str(e)}"
            )
            raise

    async def delete_document(self, collection_name: str, document_id: str) -> bool:
        """Delete a document. Deleting a missing document is not an error."""
        try:
            doc_ref = self.get_document_ref(collection_name, document_id)
            await self._run(doc_ref.delete)

            logger.info(f"Deleted document {document_id} from {collection_name}")
            return True

        except Exception as e:
            logger.error(
                f"Failed to delete document {document_id} from {collection_name}: {str(e)}"
            )
            raise

    async def query_collection(
        self,
        collection_name: str,
        filters: Optional[List[tuple]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        model_class: Optional[Type[T]] = None,
    ) -> List[T]:
        """
        Query a collection with filters and ordering.

        Args:
            collection_name: Name of the collection to query
            filters: List of filter tuples (field, operator, value)
            order_by: Field to order by
            descending: Order newest/largest first
            limit: Maximum number of results
            model_class: Optional Pydantic model class

        Returns:
            List of documents as model instances
        """
        try:
            query = self.get_collection_ref(collection_name)

            # Apply filters
            if filters:
                for field, operator, value in filters:
                    query = query.where(field, operator, value)

            # Apply ordering
            if order_by:
                direction = Query.DESCENDING if descending else Query.ASCENDING
                query = query.order_by(order_by, direction=direction)

            if limit:
                query = query.limit(limit)

            docs = await self._run(lambda: list(query.stream()))
            return [
                self._to_model(collection_name, doc.id, doc.to_dict(), model_class)
                for doc in docs
            ]

        except Exception as e:
            logger.error(f"Failed to query collection {collection_name}: {str(e)}")
            raise


# Global service instance
_firestore_service = None


def get_firestore_service(
    database_name: str = config.FIRESTORE_DATABASE,
) -> FirestoreService:
    """
    Get a singleton Firestore service instance.

    Args:
        database_name: Name of the Firestore database

    Returns:
        FirestoreService instance
    """
    global _firestore_service
    if _firestore_service is None:
        _firestore_service = FirestoreService(database_name)
    return _firestore_service
