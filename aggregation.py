from datetime import date, datetime, time
from typing import Iterable, Optional

from schemas import DailyTotal, DateRange, ExpenseRecord, ExpenseSummary

CHART_DAYS = 7

END_OF_DAY = time(23, 59, 59, 999000)


def _as_date(value) -> date:
    return value.date() if isinstance(value, datetime) else value


def in_range(expense: ExpenseRecord, date_range: Optional[DateRange]) -> bool:
    if date_range is None or date_range.from_ is None:
        return True

    expense_time = expense.local_datetime
    start = datetime.combine(_as_date(date_range.from_), time.min)
    if date_range.to is None:
        return expense_time >= start

    end = datetime.combine(_as_date(date_range.to), END_OF_DAY)
    return start <= expense_time <= end


def filter_expenses(
    expenses: Iterable[ExpenseRecord], date_range: Optional[DateRange] = None
) -> list[ExpenseRecord]:
    return [expense for expense in expenses if in_range(expense, date_range)]


def total_spent(expenses: Iterable[ExpenseRecord]) -> float:
    return sum((expense.amount for expense in expenses), 0.0)


def day_label(moment: datetime) -> str:
    # "Jan 2"; %b follows the active locale
    return f"{moment:%b} {moment.day}"


def daily_series(
    expenses: Iterable[ExpenseRecord], limit: int = CHART_DAYS
) -> list[DailyTotal]:
    """Sum amounts per calendar day, in first-seen order, keeping the last `limit` days."""
    totals: dict[str, float] = {}
    for expense in expenses:
        label = day_label(expense.local_datetime)
        totals[label] = totals.get(label, 0.0) + expense.amount

    series = [DailyTotal(label=label, amount=amount) for label, amount in totals.items()]
    return series[-limit:] if limit else []


def summarize(
    expenses: Iterable[ExpenseRecord], date_range: Optional[DateRange] = None
) -> ExpenseSummary:
    filtered = filter_expenses(expenses, date_range)
    return ExpenseSummary(
        filtered_expenses=filtered,
        total_spent=total_spent(filtered),
        daily_series=daily_series(filtered),
    )
