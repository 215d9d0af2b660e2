from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
from typing import Optional
from decimal import Decimal
import json

from ..deps import SESSION_COOKIE_NAME, get_current_user, lookup_session
from ..errors import SessionConflict, UnknownSession
from ..json_log import json_log
from ..relay_store import RelayStore
from ..scan_publisher import HAPTIC_PULSE_MS, PublisherRegistry
from ..scan_sessions import pairing_qr_svg, validate_session_id
from ..scanner_hub import build_default_hub
from ..validation import RawBarcode, ScanContext, SessionId

router = APIRouter(tags=["scanner"])

# Custom websocket close codes (4000-4999 are application-defined).
WS_CLOSE_UNAUTHORIZED = 4401
WS_CLOSE_UNKNOWN_SESSION = 4404
WS_CLOSE_CONFLICT = 4409

relay_store = RelayStore()
hub = build_default_hub()
publishers = PublisherRegistry(relay_store)


class ScannerSessionIn(BaseModel):
    context: ScanContext = "sales"


class StagingLineUpdateIn(BaseModel):
    quantity: Optional[int] = None
    unit_cost: Optional[Decimal] = Field(default=None, ge=0)
    selling_price: Optional[Decimal] = Field(default=None, ge=0)


class PhoneScanIn(BaseModel):
    session: SessionId
    barcode: RawBarcode


def _user_id(user) -> str:
    return str(user["user_id"])


# -- desktop ------------------------------------------------------------------

@router.post("/scanner/sessions")
async def create_scanner_session(data: ScannerSessionIn, user=Depends(get_current_user)):
    rt = hub.create(data.context, _user_id(user))
    view = hub.describe(rt)
    view["qr_svg"] = pairing_qr_svg(view["pairing_url"])
    return {"session": view}


@router.get("/scanner/sessions/{session_id}")
async def get_scanner_session(session_id: str, user=Depends(get_current_user)):
    rt = hub.get(session_id, _user_id(user))
    return {"session": hub.describe(rt)}


@router.delete("/scanner/sessions/{session_id}")
async def close_scanner_session(session_id: str, user=Depends(get_current_user)):
    hub.get(session_id, _user_id(user))
    await hub.close(session_id)
    return {"ok": True}


@router.get("/scanner/sessions/{session_id}/staging")
async def get_staging(session_id: str, user=Depends(get_current_user)):
    rt = hub.get(session_id, _user_id(user))
    return {"context": rt.staging.context, "lines": rt.staging.snapshot()}


@router.patch("/scanner/sessions/{session_id}/staging/{index}")
async def update_staging_line(session_id: str, index: int, data: StagingLineUpdateIn, user=Depends(get_current_user)):
    rt = hub.get(session_id, _user_id(user))
    line = None
    if data.unit_cost is not None or data.selling_price is not None:
        line = rt.staging.update_prices(index, unit_cost=data.unit_cost, selling_price=data.selling_price)
    if data.quantity is not None:
        line = rt.staging.update_quantity(index, data.quantity)
    return {"line": (line.as_dict() if line else None), "lines": rt.staging.snapshot()}


@router.delete("/scanner/sessions/{session_id}/staging/{index}")
async def remove_staging_line(session_id: str, index: int, user=Depends(get_current_user)):
    rt = hub.get(session_id, _user_id(user))
    rt.staging.remove(index)
    return {"lines": rt.staging.snapshot()}


@router.post("/scanner/sessions/{session_id}/staging/approve")
async def approve_staging(session_id: str, user=Depends(get_current_user)):
    updated = await hub.approve(session_id, _user_id(user))
    return {"ok": True, "updated": updated}


@router.websocket("/scanner/sessions/{session_id}/events")
async def scanner_events(websocket: WebSocket, session_id: str, token: Optional[str] = Query(None)):
    # Browsers cannot set Authorization on a websocket; accept the token as a query param or cookie.
    auth_token = token or websocket.cookies.get(SESSION_COOKIE_NAME)
    user = await run_in_threadpool(lookup_session, auth_token) if auth_token else None
    await websocket.accept()
    if user is None:
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
        return

    async def send(event: dict):
        await websocket.send_text(json.dumps(event, default=str))

    try:
        await hub.attach(session_id, send, user_id=_user_id(user))
    except UnknownSession:
        await websocket.close(code=WS_CLOSE_UNKNOWN_SESSION)
        return
    except SessionConflict:
        await websocket.close(code=WS_CLOSE_CONFLICT)
        return

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await send({"type": "error", "detail": "invalid json"})
                continue
            if not isinstance(message, dict):
                await send({"type": "error", "detail": "invalid message"})
                continue
            try:
                reply = hub.handle_client_message(session_id, message)
            except UnknownSession:
                # Closed by DELETE /scanner/sessions/{id} while this socket was open.
                await websocket.close(code=WS_CLOSE_UNKNOWN_SESSION)
                return
            if reply is not None:
                await send(reply)
    except WebSocketDisconnect:
        pass
    finally:
        # Leaving the screen ends the pairing.
        await hub.close(session_id)


# -- phone (unauthenticated: the session id is the only credential) ------------

@router.post("/scan/barcodes")
def publish_phone_scan(data: PhoneScanIn):
    session_id = validate_session_id(data.session)
    publisher = publishers.get(session_id)
    result = publisher.publish(data.barcode)
    if not result.ok:
        raise result.error
    return {
        "ok": True,
        "barcode": result.barcode,
        "recent": publisher.recent,
        "vibrate_ms": HAPTIC_PULSE_MS,
    }


@router.get("/scan/recent")
def phone_recent(session: str = Query(...)):
    session_id = validate_session_id(session)
    publisher = publishers.peek(session_id)
    return {"recent": (publisher.recent if publisher else [])}


@router.get("/scan/ping")
def phone_ping():
    try:
        ok = relay_store.ping()
    except Exception as ex:
        json_log("warn", "scanner.phone.ping_failed", error=str(ex))
        ok = False
    return {"ok": ok}
