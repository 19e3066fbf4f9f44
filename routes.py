"""API Routes for expenses"""
import asyncio
import contextlib
import logging
from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect
from slowapi import Limiter
from slowapi.util import get_remote_address

import config
from models.expense import ExpenseInput, MonthlyTotal, OperationState, OperationStatus, SessionInput, ViewState
from services.expense_view_model import ExpenseViewModel
from services.monthly_aggregator import MonthlyAggregator
from services.session import SessionProvider

router = APIRouter()
logger = logging.getLogger(__name__)

# In-memory rate limiting keyed by client address
limiter = Limiter(key_func=get_remote_address)

ERROR_STATUS_CODES = {
    "unauthenticated": 401,
    "not_found": 404,
    "connectivity_failure": 503,
}

# --- Dependency Functions ---
def _from_app_state(request: Request, name: str):
    component = getattr(request.app.state, name, None)
    if component is None:
        logger.error(f"'{name}' not found in application state. Check MongoDB connection.")
        raise HTTPException(status_code=503, detail="Database service not available.")
    return component

def get_view_model(request: Request) -> ExpenseViewModel:
    """Dependency to get the expense view model from the application state."""
    return _from_app_state(request, "view_model")

def get_session(request: Request) -> SessionProvider:
    return _from_app_state(request, "session")

def get_aggregator(request: Request) -> MonthlyAggregator:
    return _from_app_state(request, "aggregator")

ViewModelDep = Annotated[ExpenseViewModel, Depends(get_view_model)]
SessionDep = Annotated[SessionProvider, Depends(get_session)]
AggregatorDep = Annotated[MonthlyAggregator, Depends(get_aggregator)]


def _raise_for_failure(state: OperationState) -> None:
    if state.status == OperationStatus.FAILED:
        status_code = ERROR_STATUS_CODES.get(state.error, 500)
        raise HTTPException(status_code=status_code, detail=state.reason)

# --- Session Routes ---

@router.get("/session", response_model=ViewState, summary="Current Session", description="Returns the signed-in user and the synchronised expense state.")
async def get_session_state(view_model: ViewModelDep) -> ViewState:
    return view_model.snapshot()

@router.post("/session", response_model=ViewState, summary="Sign In", description="Sets the current user and waits for the expense state to follow.")
async def sign_in(session_input: SessionInput, session: SessionDep, view_model: ViewModelDep) -> ViewState:
    logger.info(f"POST /session called for user '{session_input.user_id}'.")
    session.sign_in(session_input.user_id)
    await view_model.wait_until_synced()
    return view_model.snapshot()

@router.delete("/session", status_code=204, summary="Sign Out")
async def sign_out(session: SessionDep, view_model: ViewModelDep) -> Response:
    logger.info("DELETE /session called.")
    session.sign_out()
    await view_model.wait_until_synced()
    return Response(status_code=204)

# --- Expense Routes ---

@router.get("/expenses", response_model=ViewState, summary="Get Expenses", description="Latest live snapshot of the user's expenses, most recent first, with the monthly total.")
async def get_expenses(view_model: ViewModelDep) -> ViewState:
    return view_model.snapshot()

@router.get("/expenses/total", response_model=MonthlyTotal, summary="Monthly Total", description="Sum of the signed-in user's expenses for a calendar month. Reports 0 when unavailable.")
async def get_monthly_total(
    session: SessionDep,
    aggregator: AggregatorDep,
    year: Optional[int] = Query(None, ge=1, le=9999, description="Calendar year, defaults to the current one."),
    month: Optional[int] = Query(None, ge=1, le=12, description="Month number 1-12, defaults to the current one."),
) -> MonthlyTotal:
    now = datetime.now(aggregator.tz)
    year = year or now.year
    month = month or now.month
    total = await aggregator.monthly_total(session.current_user_id, year, month)
    return MonthlyTotal(year=year, month=month, total=total)

@router.post("/expenses", status_code=201, response_model=OperationState, summary="Create Expense")
@limiter.limit(config.WRITE_RATE_LIMIT)
async def create_expense(request: Request, expense_input: ExpenseInput, view_model: ViewModelDep) -> OperationState:
    logger.info(f"POST /expenses called: {expense_input.name} ({expense_input.amount:.2f}).")
    state = await view_model.submit_create(expense_input.to_expense())
    _raise_for_failure(state)
    return state

@router.put("/expenses/{expense_id}", response_model=OperationState, summary="Update Expense", description="Replaces every field of an existing expense.")
@limiter.limit(config.WRITE_RATE_LIMIT)
async def update_expense(request: Request, expense_id: str, expense_input: ExpenseInput, view_model: ViewModelDep) -> OperationState:
    logger.info(f"PUT /expenses/{expense_id} called.")
    state = await view_model.submit_update(expense_input.to_expense(expense_id))
    _raise_for_failure(state)
    return state

@router.delete("/expenses/{expense_id}", response_model=OperationState, summary="Delete Expense", description="Deletes an expense. Unknown ids succeed without changes.")
@limiter.limit(config.WRITE_RATE_LIMIT)
async def delete_expense(request: Request, expense_id: str, view_model: ViewModelDep) -> OperationState:
    logger.info(f"DELETE /expenses/{expense_id} called.")
    state = await view_model.submit_delete(expense_id)
    _raise_for_failure(state)
    return state

@router.post("/expenses/sync", response_model=ViewState, summary="Retry Live Sync", description="Re-opens the live expense query after a failure.")
async def retry_sync(view_model: ViewModelDep) -> ViewState:
    logger.info("POST /expenses/sync called.")
    await view_model.retry_sync()
    return view_model.snapshot()

@router.websocket("/expenses/live")
async def live_expenses(websocket: WebSocket):
    """Pushes the expense state to the client every time it changes."""
    view_model = getattr(websocket.app.state, "view_model", None)
    if view_model is None:
        await websocket.close(code=1011)
        return
    await websocket.accept()

    async def push_states():
        async for state in view_model.state_changes():
            await websocket.send_json(state.model_dump(mode="json", by_alias=True))

    sender = asyncio.create_task(push_states())
    try:
        # Incoming messages are ignored; reading is how a disconnect is noticed
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
            await sender
    logger.info("Live expenses client disconnected.")
