"""Monthly expense totals."""
import calendar
import logging
from datetime import datetime, timezone, tzinfo
from decimal import Decimal
from typing import Optional, Tuple

from tzlocal import get_localzone

from services.exceptions import ExpenseStoreError
from services.expense_store import ExpenseStore

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def month_bounds(year: int, month: int, tz: tzinfo) -> Tuple[datetime, datetime]:
    """First and last instant of a calendar month in `tz`, returned in UTC.

    The last instant is 23:59:59.999 of the final day, the finest step MongoDB stores.
    """
    if not 1 <= month <= 12:
        raise ValueError(f"month must be between 1 and 12, got {month}")
    last_day = calendar.monthrange(year, month)[1]
    start = datetime(year, month, 1, tzinfo=tz)
    end = datetime(year, month, last_day, 23, 59, 59, 999000, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


class MonthlyAggregator:
    """Sums a user's expenses per calendar month.

    Failures are logged and reported as a zero total: the figure is a display
    summary and the mutations already surface their own errors.
    """

    def __init__(self, store: ExpenseStore, tz: Optional[tzinfo] = None):
        self._store = store
        self.tz = tz or get_localzone()

    async def monthly_total(self, user_id: Optional[str], year: int, month: int) -> Decimal:
        start, end = month_bounds(year, month, self.tz)
        if user_id is None:
            logger.warning("Monthly total requested without a user; reporting 0.")
            return ZERO
        try:
            expenses = await self._store.find_between(user_id, start, end)
        except ExpenseStoreError as e:
            logger.warning(f"Monthly total for '{user_id}' {year}-{month:02d} unavailable, reporting 0: {e}")
            return ZERO
        total = sum((Decimal(str(expense.amount)) for expense in expenses), start=ZERO)
        total = total.quantize(CENT)
        logger.info(f"Monthly total for '{user_id}' {year}-{month:02d}: {total} ({len(expenses)} expenses).")
        return total
