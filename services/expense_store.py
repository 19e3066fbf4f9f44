"""Per-user expense persistence on top of a MongoDB collection, including live queries."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import DESCENDING
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from models.expense import Expense, normalize_timestamp
from services.exceptions import ConnectivityFailure, InvalidRecord, NotFound
from services.session import SessionProvider

logger = logging.getLogger(__name__)

Snapshot = Tuple[Expense, ...]

# Most recent first; equal dates fall back to the newest document id
SNAPSHOT_SORT = [("date", DESCENDING), ("_id", DESCENDING)]


def _to_object_id(expense_id: Optional[str]) -> Optional[ObjectId]:
    if not expense_id or not ObjectId.is_valid(expense_id):
        return None
    return ObjectId(expense_id)


def _decode(document: Dict[str, Any]) -> Expense:
    try:
        return Expense.from_document(document)
    except ValidationError as e:
        logger.error(f"Stored expense {document.get('_id')} could not be read: {e}")
        raise InvalidRecord(f"Stored expense {document.get('_id')} is not a valid expense.") from e


class ExpenseStore:
    """CRUD and live queries for expenses, scoped through the session.

    Writes are last-write-wins: there is no version field and no merge.
    """

    def __init__(
        self,
        collection: AsyncIOMotorCollection,
        session: SessionProvider,
        verify_ownership: bool = False,
    ):
        self._collection = collection
        self._session = session
        self._verify_ownership = verify_ownership

    @property
    def session(self) -> SessionProvider:
        return self._session

    async def create(self, expense: Expense) -> str:
        """Inserts `expense` for the signed-in user and returns the generated id.

        Any user id carried by `expense` is ignored.
        """
        user_id = self._session.require_user()
        document = expense.to_document()
        document["userId"] = user_id
        try:
            result = await self._collection.insert_one(document)
        except PyMongoError as e:
            logger.error(f"Database error creating expense for user '{user_id}': {e}")
            raise ConnectivityFailure(f"Database error creating expense: {e}") from e
        expense_id = str(result.inserted_id)
        logger.info(f"Created expense {expense_id} for user '{user_id}'.")
        return expense_id

    async def update(self, expense: Expense) -> None:
        """Replaces every mutable field of an existing expense. `id` and owner are kept."""
        object_id = _to_object_id(expense.id)
        if object_id is None:
            raise NotFound(f"Expense '{expense.id}' not found.")
        query = self._ownership_filter({"_id": object_id})
        changes = expense.to_document()
        del changes["userId"]
        try:
            result = await self._collection.update_one(query, {"$set": changes})
        except PyMongoError as e:
            logger.error(f"Database error updating expense {expense.id}: {e}")
            raise ConnectivityFailure(f"Database error updating expense: {e}") from e
        if result.matched_count == 0:
            logger.warning(f"Update rejected: expense {expense.id} does not exist.")
            raise NotFound(f"Expense '{expense.id}' not found.")
        logger.info(f"Updated expense {expense.id}.")

    async def delete(self, expense_id: str) -> None:
        """Removes an expense. Unknown ids are ignored."""
        object_id = _to_object_id(expense_id)
        if object_id is None:
            logger.debug(f"Delete ignored: '{expense_id}' is not a valid expense id.")
            return
        query = self._ownership_filter({"_id": object_id})
        try:
            result = await self._collection.delete_one(query)
        except PyMongoError as e:
            logger.error(f"Database error deleting expense {expense_id}: {e}")
            raise ConnectivityFailure(f"Database error deleting expense: {e}") from e
        if result.deleted_count:
            logger.info(f"Deleted expense {expense_id}.")
        else:
            logger.debug(f"Delete ignored: expense {expense_id} does not exist.")

    async def get(self, expense_id: str) -> Optional[Expense]:
        object_id = _to_object_id(expense_id)
        if object_id is None:
            return None
        try:
            document = await self._collection.find_one({"_id": object_id})
        except PyMongoError as e:
            logger.error(f"Database error fetching expense {expense_id}: {e}")
            raise ConnectivityFailure(f"Database error fetching expense: {e}") from e
        return _decode(document) if document else None

    async def list_expenses(self, user_id: str) -> List[Expense]:
        """One-shot read of the live query: the user's expenses, most recent first."""
        self._session.require_user()
        try:
            return await self._fetch({"userId": user_id})
        except PyMongoError as e:
            logger.error(f"Database error listing expenses for user '{user_id}': {e}")
            raise ConnectivityFailure(f"Database error listing expenses: {e}") from e

    async def find_between(self, user_id: str, start: datetime, end: datetime) -> List[Expense]:
        """Expenses of `user_id` dated within [start, end], both ends inclusive."""
        self._session.require_user()
        query = {
            "userId": user_id,
            "date": {"$gte": normalize_timestamp(start), "$lte": normalize_timestamp(end)},
        }
        try:
            return await self._fetch(query)
        except PyMongoError as e:
            logger.error(f"Database error fetching expenses between {start} and {end}: {e}")
            raise ConnectivityFailure(f"Database error fetching expenses: {e}") from e

    def subscribe(self, user_id: str) -> "ExpenseSubscription":
        """Opens a live query for `user_id`. Needs a signed-in session."""
        self._session.require_user()
        logger.info(f"Opening live expense query for user '{user_id}'.")
        return ExpenseSubscription(self, user_id)

    # --- internals used by ExpenseSubscription ---

    async def _fetch(self, query: Dict[str, Any]) -> List[Expense]:
        expenses = []
        cursor = self._collection.find(query).sort(SNAPSHOT_SORT)
        async for document in cursor:
            expenses.append(_decode(document))
        return expenses

    def _watch(self, user_id: str):
        # Deletes only carry the document key, so they are all let through and
        # the subscription drops re-reads that did not change anything.
        pipeline = [
            {"$match": {"$or": [
                {"fullDocument.userId": user_id},
                {"operationType": "delete"},
            ]}}
        ]
        return self._collection.watch(pipeline, full_document="updateLookup")

    def _ownership_filter(self, query: Dict[str, Any]) -> Dict[str, Any]:
        if self._verify_ownership:
            query["userId"] = self._session.require_user()
        return query


class ExpenseSubscription:
    """Async iterator of snapshots for one user's expenses.

    The first snapshot is the current state; each later one follows a committed
    change to that user's set. Iteration ends with ConnectivityFailure when the
    change stream breaks, with InvalidRecord when a stored document cannot be
    decoded, and ends quietly once `cancel()` has been called.
    """

    def __init__(self, store: ExpenseStore, user_id: str):
        self._store = store
        self.user_id = user_id
        self._stream = None
        self._last: Optional[Snapshot] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "ExpenseSubscription":
        return self

    async def __anext__(self) -> Snapshot:
        while not self._closed:
            try:
                if self._stream is None:
                    self._stream = self._store._watch(self.user_id)
                    # try_next starts the change stream before the first read,
                    # so nothing committed in between is missed.
                    await self._stream.try_next()
                elif self._last is not None:
                    await self._stream.next()
                snapshot = tuple(await self._store._fetch({"userId": self.user_id}))
            except StopAsyncIteration:
                if self._closed:
                    break
                await self._shutdown()
                logger.error(f"Live expense query for user '{self.user_id}' ended unexpectedly.")
                raise ConnectivityFailure("Live expense query ended unexpectedly.")
            except PyMongoError as e:
                if self._closed:
                    break
                await self._shutdown()
                logger.error(f"Live expense query for user '{self.user_id}' failed: {e}")
                raise ConnectivityFailure(f"Live expense query failed: {e}") from e
            except InvalidRecord:
                await self._shutdown()
                raise

            if self._closed:
                break
            if snapshot != self._last:
                self._last = snapshot
                logger.debug(f"Snapshot for user '{self.user_id}': {len(snapshot)} expenses.")
                return snapshot
        raise StopAsyncIteration

    async def cancel(self) -> None:
        """Stops delivery and releases the change stream. Safe to call twice."""
        if self._closed:
            return
        await self._shutdown()
        logger.info(f"Live expense query for user '{self.user_id}' cancelled.")

    async def _shutdown(self) -> None:
        self._closed = True
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                await stream.close()
            except PyMongoError as e:
                logger.warning(f"Error closing change stream for user '{self.user_id}': {e}")

    async def __aenter__(self) -> "ExpenseSubscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()
