import asyncio
import contextlib
import logging
import sqlite3
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from bookswap import catalog, directory, ledger, messaging, reports
from bookswap.db import db, init_db
from bookswap.errors import BookSwapError, NotAuthorized, NotFound
from bookswap.models import (
    ApproveBody,
    Condition,
    LocationCreate,
    MessageCreate,
    ProfileCreate,
    ReportCreate,
    ReportStatusUpdate,
    RequestCreate,
    RoleUpdate,
    SchoolCreate,
    StudentActiveUpdate,
    StudentCreate,
    TextbookCreate,
    TextbookStatus,
    TextbookUpdate,
)
from bookswap.notifications import NotificationAggregator, get_counts, notify_activity, users_with_pending_actions

logger = logging.getLogger(__name__)

app = FastAPI(title="BookSwap - School Textbook Exchange")


@app.on_event("startup")
async def startup_event():
    init_db()
    logger.info("BookSwap started")


@app.exception_handler(BookSwapError)
async def bookswap_error_handler(request: Request, exc: BookSwapError):
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    return JSONResponse({"ok": False, "message": exc.message}, status_code=exc.status_code)


@app.exception_handler(sqlite3.OperationalError)
async def store_error_handler(request: Request, exc: sqlite3.OperationalError):
    logger.error(f"Store error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse({"ok": False, "message": "Storage temporarily unavailable, please retry"}, status_code=503)


def current_user(x_user_id: int = Header(...)) -> dict:
    """Caller identity. Authentication itself happens upstream of this service."""
    try:
        with db() as c:
            return directory.get_profile(c, x_user_id)
    except NotFound:
        raise NotAuthorized("Unknown user") from None


def current_admin(user: dict = Depends(current_user)) -> dict:
    with db() as c:
        directory.require_admin(c, user["id"])
    return user


@app.get("/health")
def health():
    response = {"ok": True, "database": "Not Connected", "tables": []}
    with db() as c:
        rows = c.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name").fetchall()
    response["database"] = "Connected"
    response["tables"] = [r["name"] for r in rows if not r["name"].startswith("sqlite_")]
    return response


# ------------------------
# Profiles
# ------------------------
@app.post("/profiles")
def create_profile(payload: ProfileCreate):
    with db() as c:
        return directory.create_profile(c, payload)


@app.get("/profiles/{user_id}")
def get_profile(user_id: int, user: dict = Depends(current_user)):
    with db() as c:
        profile = directory.get_profile(c, user_id)
    return {k: profile[k] for k in ("id", "first_name", "last_name", "school_id")}


@app.get("/me")
def me(user: dict = Depends(current_user)):
    with db() as c:
        roles = directory.get_roles(c, user["id"])
    return {**user, "roles": roles}


# ------------------------
# Textbooks
# ------------------------
@app.post("/textbooks")
def create_textbook(payload: TextbookCreate, user: dict = Depends(current_user)):
    with db() as c:
        return catalog.create_textbook(c, user, payload)


@app.get("/textbooks")
def list_textbooks(
    q: Optional[str] = Query(None, max_length=200),
    condition: Optional[Condition] = None,
    status: Optional[TextbookStatus] = None,
    user: dict = Depends(current_user),
):
    with db() as c:
        items = catalog.list_library(c, q=q, condition=condition, status=status, school_id=user["school_id"])
    return {"items": items}


@app.get("/textbooks/mine")
def my_textbooks(user: dict = Depends(current_user)):
    with db() as c:
        return {"items": catalog.list_owned(c, user["id"])}


@app.get("/textbooks/{textbook_id}")
def get_textbook(textbook_id: int, user: dict = Depends(current_user)):
    with db() as c:
        return catalog.get_textbook(c, textbook_id)


@app.patch("/textbooks/{textbook_id}")
def update_textbook(textbook_id: int, payload: TextbookUpdate, user: dict = Depends(current_user)):
    with db() as c:
        return catalog.update_textbook(c, textbook_id, user["id"], payload)


@app.post("/textbooks/{textbook_id}/toggle-status")
def toggle_textbook_status(textbook_id: int, user: dict = Depends(current_user)):
    with db() as c:
        return catalog.toggle_status(c, textbook_id, user["id"])


@app.delete("/textbooks/{textbook_id}")
def delete_textbook(textbook_id: int, user: dict = Depends(current_user)):
    with db() as c:
        catalog.delete_textbook(c, textbook_id, user["id"])
    return {"ok": True, "message": "Textbook removed."}


@app.get("/locations")
def list_locations(user: dict = Depends(current_user)):
    with db() as c:
        return {"items": directory.list_locations(c, user["school_id"])}


# ------------------------
# Requests
# ------------------------
@app.post("/requests")
async def create_request(body: RequestCreate, user: dict = Depends(current_user)):
    request = ledger.create_request(user["id"], body.textbook_id, body.location_id, body.proposed_time)
    await notify_activity("request_created", {"request_id": request["id"], "textbook_id": body.textbook_id})
    return request


@app.get("/requests/outgoing")
def outgoing_requests(user: dict = Depends(current_user)):
    return {"items": ledger.list_outgoing(user["id"])}


@app.get("/requests/incoming")
def incoming_requests(user: dict = Depends(current_user)):
    return {"items": ledger.list_incoming(user["id"])}


@app.get("/requests/borrowed")
def borrowed_books(user: dict = Depends(current_user)):
    return {"items": ledger.list_borrowed(user["id"])}


@app.get("/requests/{request_id}")
def get_request(request_id: int, user: dict = Depends(current_user)):
    return ledger.get_request(request_id, user["id"])


@app.post("/requests/{request_id}/approve")
async def approve_request(request_id: int, body: ApproveBody, user: dict = Depends(current_user)):
    request = ledger.approve(request_id, user["id"], body.location_id)
    await notify_activity("request_approved", {"request_id": request_id, "location": request["location_name"]})
    return request


@app.post("/requests/{request_id}/reject")
async def reject_request(request_id: int, user: dict = Depends(current_user)):
    request = ledger.reject(request_id, user["id"])
    await notify_activity("request_rejected", {"request_id": request_id})
    return request


@app.post("/requests/{request_id}/pickup")
async def confirm_pickup(request_id: int, user: dict = Depends(current_user)):
    request = ledger.confirm_pickup(request_id, user["id"])
    await notify_activity("ownership_transferred", {"request_id": request_id, "textbook_id": request["textbook_id"]})
    return request


@app.post("/requests/{request_id}/return")
async def return_book(request_id: int, user: dict = Depends(current_user)):
    request = ledger.return_book(request_id, user["id"])
    await notify_activity("book_returned", {"request_id": request_id, "textbook_id": request["textbook_id"]})
    return request


@app.get("/requests/{request_id}/messages")
def list_messages(request_id: int, user: dict = Depends(current_user)):
    return {"items": messaging.list_messages(request_id, user["id"])}


@app.post("/requests/{request_id}/messages")
def post_message(request_id: int, body: MessageCreate, user: dict = Depends(current_user)):
    return messaging.post_message(request_id, user["id"], body.body)


# ------------------------
# Notifications
# ------------------------
@app.get("/notifications")
def notifications(user: dict = Depends(current_user)):
    return get_counts(user["id"]).model_dump()


@app.websocket("/ws/notifications")
async def ws_notifications(websocket: WebSocket, user_id: int):
    """
    Push the caller's notification counts: once on connect, then after every
    request change that involves them. Sending any text asks for a recount.
    """
    try:
        with db() as c:
            directory.get_profile(c, user_id)
    except NotFound:
        await websocket.close(code=1008)
        return
    await websocket.accept()

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    aggregator = NotificationAggregator(
        user_id,
        on_change=lambda counts: loop.call_soon_threadsafe(queue.put_nowait, counts),
    )

    async def _pump():
        while True:
            counts = await queue.get()
            await websocket.send_json(counts.model_dump())

    aggregator.start()
    pump = asyncio.create_task(_pump())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            aggregator.refresh()
    except WebSocketDisconnect:
        pass
    finally:
        aggregator.stop()
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
            await pump


# ------------------------
# Reports
# ------------------------
@app.post("/reports")
def create_report(payload: ReportCreate, user: dict = Depends(current_user)):
    with db() as c:
        return reports.create_report(c, user["id"], payload)


# ------------------------
# Admin
# ------------------------
@app.get("/admin/reports")
def admin_reports(admin: dict = Depends(current_admin)):
    with db() as c:
        return {"items": reports.list_reports(c)}


@app.post("/admin/reports/{report_id}/status")
def admin_report_status(report_id: int, body: ReportStatusUpdate, admin: dict = Depends(current_admin)):
    with db() as c:
        return reports.update_report_status(c, report_id, body.status)


@app.post("/admin/users/{user_id}/role")
def admin_set_role(user_id: int, body: RoleUpdate, admin: dict = Depends(current_admin)):
    with db() as c:
        return {"user_id": user_id, "roles": directory.set_role(c, user_id, body.role)}


@app.post("/admin/locations")
def admin_create_location(body: LocationCreate, admin: dict = Depends(current_admin)):
    with db() as c:
        return directory.create_location(c, body.school_id or admin["school_id"], body.name, body.label)


@app.get("/admin/pending-actions")
def admin_pending_actions(admin: dict = Depends(current_admin)):
    with db() as c:
        return {"items": users_with_pending_actions(c)}


@app.post("/admin/schools")
def admin_create_school(body: SchoolCreate, admin: dict = Depends(current_admin)):
    with db() as c:
        return directory.create_school(c, body.name, body.domain)


@app.get("/admin/registry")
def admin_registry(admin: dict = Depends(current_admin)):
    with db() as c:
        return {"items": directory.list_registry(c, admin["school_id"])}


@app.post("/admin/registry")
def admin_add_student(body: StudentCreate, admin: dict = Depends(current_admin)):
    with db() as c:
        return directory.add_student(c, admin["school_id"], body, created_by=admin["id"])


@app.post("/admin/registry/{entry_id}/active")
def admin_student_active(entry_id: int, body: StudentActiveUpdate, admin: dict = Depends(current_admin)):
    with db() as c:
        return directory.set_student_active(c, entry_id, body.is_active)


@app.get("/admin/users")
def admin_users(admin: dict = Depends(current_admin)):
    with db() as c:
        return {"items": directory.list_profiles(c)}


@app.get("/admin/stats")
def admin_stats(admin: dict = Depends(current_admin)):
    with db() as c:
        return directory.admin_stats(c)
