from fastapi import (
    APIRouter,
    Body,
    Depends,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import StreamingResponse
from datetime import date
from typing import Any, Optional
import asyncio
import csv
import logging
from io import StringIO

from aggregation import summarize
from auth import get_current_user, resolve_token
from context import AppContext, get_context
from database import User
from errors import ExpenseTrackerError
from feed import FeedChannel
from schemas import CreatedExpense, DateRange, ExpenseRecord, ExpenseSummary

logger = logging.getLogger(__name__)

router = APIRouter()


def _date_range(start_date: Optional[date], end_date: Optional[date]) -> DateRange:
    return DateRange(from_=start_date, to=end_date)


def _http_error(error: ExpenseTrackerError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)


@router.post(
    "/expenses", response_model=CreatedExpense, status_code=status.HTTP_201_CREATED
)
async def create_expense(
    expense: dict[str, Any] = Body(...),
    context: AppContext = Depends(get_context),
    current_user: User = Depends(get_current_user),
):
    try:
        expense_id = context.store.create_expense(current_user.uid, expense)
    except ExpenseTrackerError as exc:
        raise _http_error(exc)
    return CreatedExpense(id=expense_id)


@router.delete("/expenses/{expense_id}")
async def delete_expense(
    expense_id: str,
    context: AppContext = Depends(get_context),
    current_user: User = Depends(get_current_user),
):
    try:
        context.store.delete_expense(current_user.uid, expense_id)
    except ExpenseTrackerError as exc:
        raise _http_error(exc)
    return {"message": "Expense deleted successfully"}


@router.get("/expenses", response_model=list[ExpenseRecord])
async def get_expenses(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    context: AppContext = Depends(get_context),
    current_user: User = Depends(get_current_user),
):
    feed = context.feeds.acquire(current_user.uid)
    date_range = _date_range(start_date, end_date)
    return summarize(feed.state().expenses, date_range).filtered_expenses


@router.get("/expenses/summary", response_model=ExpenseSummary)
async def get_summary(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    context: AppContext = Depends(get_context),
    current_user: User = Depends(get_current_user),
):
    feed = context.feeds.acquire(current_user.uid)
    return summarize(feed.state().expenses, _date_range(start_date, end_date))


@router.get("/expenses/feed")
async def get_feed(
    context: AppContext = Depends(get_context),
    current_user: User = Depends(get_current_user),
):
    feed = context.feeds.acquire(current_user.uid)
    state = feed.state().model_dump(mode="json")
    state["store_error"] = context.store.last_error(current_user.uid)
    return state


@router.get("/expenses/export")
async def export_expenses(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    context: AppContext = Depends(get_context),
    current_user: User = Depends(get_current_user),
):
    """
    Exports the expenses in the selected range as CSV:
    - One row per expense, newest first
    - A total line at the end
    """
    feed = context.feeds.acquire(current_user.uid)
    summary = summarize(feed.state().expenses, _date_range(start_date, end_date))

    csv_data = StringIO()
    writer = csv.writer(csv_data)
    writer.writerow(["Date", "Description", "Amount", "Note"])
    for expense in summary.filtered_expenses:
        writer.writerow(
            [
                expense.local_datetime.date().isoformat(),
                expense.description,
                f"{expense.amount:.2f}",
                expense.note,
            ]
        )

    writer.writerow([])
    writer.writerow(["Total Spending", f"{summary.total_spent:.2f}"])
    csv_data.seek(0)

    return StreamingResponse(
        iter([csv_data.getvalue()]),
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename={current_user.username}_expenses.csv"
        },
    )


@router.websocket("/expenses/live")
async def live_expenses(
    websocket: WebSocket,
    token: str = Query(...),
    context: AppContext = Depends(get_context),
):
    with context.session_factory() as db:
        user = resolve_token(token, db, context.settings)
        uid = user.uid if user else None
    if uid is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    feed = context.feeds.acquire(uid)
    channel = FeedChannel(feed, asyncio.get_running_loop())
    receiver = asyncio.ensure_future(websocket.receive())
    try:
        await websocket.send_json(feed.state().model_dump(mode="json"))
        while True:
            getter = asyncio.ensure_future(channel.get())
            done, _ = await asyncio.wait(
                {receiver, getter}, return_when=asyncio.FIRST_COMPLETED
            )
            if getter in done:
                state = getter.result()
                if state is None:
                    # the feed was released on logout
                    await websocket.close(code=status.WS_1000_NORMAL_CLOSURE)
                    break
                await websocket.send_json(state.model_dump(mode="json"))
            else:
                getter.cancel()
            if receiver in done:
                if receiver.result()["type"] == "websocket.disconnect":
                    break
                # anything the client sends is ignored
                receiver = asyncio.ensure_future(websocket.receive())
    except WebSocketDisconnect:
        logger.info("Live feed client for %s disconnected", uid)
    finally:
        receiver.cancel()
        channel.close()
