"""Shared test helpers: an in-memory stand-in for a motor collection and a base test case."""
import asyncio
import unittest
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId

from models.expense import Category, Expense
from services.expense_store import ExpenseStore
from services.monthly_aggregator import MonthlyAggregator
from services.session import SessionProvider

_CLOSED = object()


class InsertResult:
    def __init__(self, inserted_id: ObjectId):
        self.inserted_id = inserted_id


class UpdateResult:
    def __init__(self, matched_count: int):
        self.matched_count = matched_count
        self.modified_count = matched_count


class DeleteResult:
    def __init__(self, deleted_count: int):
        self.deleted_count = deleted_count


def _matches(document: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, condition in query.items():
        value = document.get(key)
        if isinstance(condition, dict):
            for operator, operand in condition.items():
                if value is None:
                    return False
                if operator == '$gte' and not value >= operand:
                    return False
                if operator == '$lte' and not value <= operand:
                    return False
        elif value != condition:
            return False
    return True


class FakeCursor:
    def __init__(self, documents: List[Dict[str, Any]]):
        self._documents = documents

    def sort(self, keys):
        for key, direction in reversed(keys):
            self._documents.sort(key=lambda doc: doc[key], reverse=direction < 0)
        return self

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for document in self._documents:
            yield document


class FakeChangeStream:
    """Queue of change events fed by FakeCollection writes."""

    def __init__(self, collection: 'FakeCollection', pipeline, full_document):
        self._collection = collection
        self.pipeline = pipeline
        self.full_document = full_document
        self._events: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, event: Any) -> None:
        self._events.put_nowait(event)

    async def try_next(self):
        if self.closed:
            raise StopAsyncIteration
        try:
            event = self._events.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return self._unwrap(event)

    async def next(self):
        if self.closed:
            raise StopAsyncIteration
        return self._unwrap(await self._events.get())

    @staticmethod
    def _unwrap(event: Any):
        if event is _CLOSED:
            raise StopAsyncIteration
        if isinstance(event, Exception):
            raise event
        return event

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._collection.streams.remove(self)
        self._events.put_nowait(_CLOSED)


class FakeCollection:
    """The slice of AsyncIOMotorCollection used by ExpenseStore, kept in memory.

    Set `fail_with` to an exception to make every call raise it.
    """

    def __init__(self):
        self.documents: Dict[ObjectId, Dict[str, Any]] = {}
        self.streams: List[FakeChangeStream] = []
        self.fail_with: Optional[Exception] = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def _publish(self, event: Dict[str, Any]) -> None:
        for stream in list(self.streams):
            stream.push(event)

    async def insert_one(self, document: Dict[str, Any]) -> InsertResult:
        self._check()
        object_id = ObjectId()
        document['_id'] = object_id
        self.documents[object_id] = dict(document)
        self._publish({'operationType': 'insert', 'documentKey': {'_id': object_id},
                       'fullDocument': dict(document)})
        return InsertResult(object_id)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any]) -> UpdateResult:
        self._check()
        for object_id, document in self.documents.items():
            if _matches(document, query):
                document.update(update['$set'])
                self._publish({'operationType': 'update', 'documentKey': {'_id': object_id},
                               'fullDocument': dict(document)})
                return UpdateResult(1)
        return UpdateResult(0)

    async def delete_one(self, query: Dict[str, Any]) -> DeleteResult:
        self._check()
        for object_id, document in list(self.documents.items()):
            if _matches(document, query):
                del self.documents[object_id]
                self._publish({'operationType': 'delete', 'documentKey': {'_id': object_id}})
                return DeleteResult(1)
        return DeleteResult(0)

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._check()
        for document in self.documents.values():
            if _matches(document, query):
                return dict(document)
        return None

    def find(self, query: Dict[str, Any]) -> FakeCursor:
        self._check()
        return FakeCursor([dict(doc) for doc in self.documents.values() if _matches(doc, query)])

    def watch(self, pipeline=None, full_document=None) -> FakeChangeStream:
        stream = FakeChangeStream(self, pipeline, full_document)
        self.streams.append(stream)
        return stream

    def break_streams(self, error: Exception) -> None:
        """Makes every open change stream raise `error` on its next read."""
        for stream in list(self.streams):
            stream.push(error)

    def end_streams(self) -> None:
        """Ends every open change stream as if the server had dropped it."""
        for stream in list(self.streams):
            stream.push(_CLOSED)


def make_expense(**overrides: Any) -> Expense:
    values = {
        'name': 'Coffee',
        'amount': 3.50,
        'category': Category.FOOD,
        'date': datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc),
        'description': '',
    }
    values.update(overrides)
    return Expense(**values)


class BaseTestCase(unittest.IsolatedAsyncioTestCase):
    """Fresh in-memory collection, session, store and aggregator per test."""

    async def asyncSetUp(self) -> None:
        self.collection = FakeCollection()
        self.session = SessionProvider()
        self.store = ExpenseStore(self.collection, self.session)
        self.aggregator = MonthlyAggregator(self.store, tz=timezone.utc)
        self._tasks: List[asyncio.Task] = []

    async def asyncTearDown(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def collect(self, subscription, into: List) -> asyncio.Task:
        """Runs `subscription` in the background, appending each snapshot to `into`."""

        async def consume():
            async for snapshot in subscription:
                into.append(snapshot)

        task = asyncio.create_task(consume())
        self._tasks.append(task)
        return task

    async def eventually(self, predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                self.fail('Condition not met within timeout.')
            await asyncio.sleep(0.01)

    async def settle(self) -> None:
        """Lets background tasks run for a moment."""
        for _ in range(5):
            await asyncio.sleep(0.01)
