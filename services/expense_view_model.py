"""Coordinator between the session, the expense store and display clients."""
import asyncio
import contextlib
import logging
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Awaitable, Callable, Optional

from models.expense import Expense, OperationState, OperationStatus, ViewState
from services.exceptions import ExpenseStoreError
from services.expense_store import ExpenseStore, ExpenseSubscription, Snapshot
from services.monthly_aggregator import ZERO, MonthlyAggregator
from services.session import SessionProvider

logger = logging.getLogger(__name__)


class ExpenseViewModel:
    """Keeps the latest expense list, monthly total and operation outcome.

    Session changes are queued and handled one at a time by a background task,
    so the previous live query is always cancelled before the next one opens.
    """

    def __init__(
        self,
        session: SessionProvider,
        store: ExpenseStore,
        aggregator: MonthlyAggregator,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._session = session
        self._store = store
        self._aggregator = aggregator
        self._clock = clock or (lambda: datetime.now(aggregator.tz))

        self._user_id: Optional[str] = None
        self._expenses: Snapshot = ()
        self._monthly_total: Decimal = ZERO
        self._operation = OperationState()
        self._sync_error: Optional[str] = None

        self._subscription: Optional[ExpenseSubscription] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._session_changes: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._session_task: Optional[asyncio.Task] = None
        self._unsubscribe_session: Optional[Callable[[], None]] = None
        self._changed = asyncio.Event()

    # --- observable state ---

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def expenses(self) -> Snapshot:
        return self._expenses

    @property
    def monthly_total(self) -> Decimal:
        return self._monthly_total

    @property
    def operation(self) -> OperationState:
        return self._operation

    @property
    def sync_error(self) -> Optional[str]:
        return self._sync_error

    def snapshot(self) -> ViewState:
        return ViewState(
            user_id=self._user_id,
            expenses=list(self._expenses),
            monthly_total=self._monthly_total,
            operation=self._operation,
            sync_error=self._sync_error,
        )

    async def state_changes(self) -> AsyncIterator[ViewState]:
        """Yields the current state, then a fresh one after every change."""
        while True:
            changed = self._changed
            yield self.snapshot()
            await changed.wait()

    def _notify(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    # --- lifecycle ---

    async def start(self) -> None:
        """Begins following the session, starting with the current identity."""
        if self._session_task is not None:
            return
        self._unsubscribe_session = self._session.subscribe(self._session_changes.put_nowait)
        self._session_changes.put_nowait(self._session.current_user_id)
        self._session_task = asyncio.create_task(self._follow_session())

    async def stop(self) -> None:
        if self._unsubscribe_session is not None:
            self._unsubscribe_session()
            self._unsubscribe_session = None
        if self._session_task is not None:
            self._session_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._session_task
            self._session_task = None
        await self._cancel_subscription()

    async def wait_until_synced(self) -> None:
        """Returns once every queued session change has been applied."""
        await self._session_changes.join()

    async def _follow_session(self) -> None:
        while True:
            user_id = await self._session_changes.get()
            try:
                await self._apply_user(user_id)
            except Exception:
                logger.exception(f"Unexpected error switching session to '{user_id}'.")
            finally:
                self._session_changes.task_done()

    async def _apply_user(self, user_id: Optional[str]) -> None:
        await self._cancel_subscription()
        self._user_id = user_id
        self._expenses = ()
        self._monthly_total = ZERO
        self._sync_error = None
        if user_id is None:
            logger.info("No user signed in; expense state cleared.")
            self._notify()
            return
        self._open_subscription(user_id)
        await self.refresh_total()

    # --- live query ---

    def _open_subscription(self, user_id: str) -> None:
        try:
            subscription = self._store.subscribe(user_id)
        except ExpenseStoreError as e:
            logger.error(f"Could not open live expense query for '{user_id}': {e}")
            self._sync_error = str(e)
            self._notify()
            return
        self._subscription = subscription
        self._pump_task = asyncio.create_task(self._pump(subscription))

    async def _pump(self, subscription: ExpenseSubscription) -> None:
        try:
            async for snapshot in subscription:
                if subscription is not self._subscription:
                    return
                self._expenses = snapshot
                self._sync_error = None
                self._notify()
        except ExpenseStoreError as e:
            if subscription is self._subscription:
                logger.error(f"Live expense query for '{subscription.user_id}' stopped: {e}")
                self._sync_error = str(e)
                self._notify()
        except Exception as e:
            logger.exception(f"Live expense query for '{subscription.user_id}' crashed.")
            await subscription.cancel()
            if subscription is self._subscription:
                self._sync_error = f"Live expense query crashed: {e}"
                self._notify()

    async def _cancel_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        task, self._pump_task = self._pump_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if subscription is not None:
            await subscription.cancel()

    async def retry_sync(self) -> None:
        """Re-opens the live query for the current user, e.g. after a connectivity failure."""
        await self._cancel_subscription()
        if self._user_id is None:
            return
        self._sync_error = None
        self._open_subscription(self._user_id)
        await self.refresh_total()

    # --- totals ---

    async def refresh_total(self) -> Decimal:
        now = self._clock()
        self._monthly_total = await self._aggregator.monthly_total(self._session.current_user_id, now.year, now.month)
        self._notify()
        return self._monthly_total

    # --- mutations ---

    async def submit_create(self, expense: Expense) -> OperationState:
        return await self._run("create", lambda: self._store.create(expense))

    async def submit_update(self, expense: Expense) -> OperationState:
        return await self._run("update", lambda: self._store.update(expense), expense.id)

    async def submit_delete(self, expense_id: str) -> OperationState:
        return await self._run("delete", lambda: self._store.delete(expense_id), expense_id)

    def reset_operation(self) -> None:
        self._operation = OperationState()
        self._notify()

    async def _run(
        self,
        action: str,
        operation: Callable[[], Awaitable[Optional[str]]],
        expense_id: Optional[str] = None,
    ) -> OperationState:
        self._operation = OperationState(status=OperationStatus.IN_PROGRESS, expense_id=expense_id)
        self._notify()
        try:
            result = await operation()
        except ExpenseStoreError as e:
            logger.warning(f"Expense {action} failed: {e}")
            self._operation = OperationState(
                status=OperationStatus.FAILED, reason=str(e), error=e.kind, expense_id=expense_id
            )
            self._notify()
            return self._operation
        if action == "create":
            expense_id = result
        self._operation = OperationState(status=OperationStatus.SUCCEEDED, expense_id=expense_id)
        await self.refresh_total()
        return self._operation
