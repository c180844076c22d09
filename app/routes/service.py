import asyncio
import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.security import allow_request

router = APIRouter()
log = logging.getLogger("app.routes")

REQUIRED_TRIGGER_FIELDS = ("date", "time", "zip")


def get_service(request: Request):
    return request.app.state.service


def _client_key(request: Request, action: str) -> str:
    host = request.client.host if request.client else "unknown"
    return f"{action}:{host}"


@router.get("/health")
def health(request: Request):
    return get_service(request).health()


@router.get("/stats")
def stats(request: Request):
    return get_service(request).stats_snapshot()


@router.post("/trigger")
async def trigger(request: Request):
    """Apply to a job by hand: {"date": "23.08.2025", "time": "15:00", "zip": "58452", "city": "Witten"}."""
    if not allow_request(_client_key(request, "trigger"), limit=10, window_seconds=60):
        return JSONResponse({"error": "Too many requests"}, status_code=429)

    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = None
    if not isinstance(payload, dict):
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

    if any(payload.get(name) in (None, "") for name in REQUIRED_TRIGGER_FIELDS):
        return JSONResponse({"error": "date, time, and zip are required fields"}, status_code=400)

    details = {name: payload.get(name) for name in ("date", "time", "zip", "city")}
    try:
        result = await get_service(request).handle_new_job(details)
    except Exception as e:
        log.exception("Manual trigger failed")
        return JSONResponse({"error": str(e) or type(e).__name__}, status_code=500)
    return {"success": True, "processed": result}


@router.post("/test-email")
async def test_email(request: Request):
    if not allow_request(_client_key(request, "test-email"), limit=3, window_seconds=60):
        return JSONResponse({"error": "Too many requests"}, status_code=429)

    try:
        await asyncio.to_thread(get_service(request).notifier.send_test)
    except Exception as e:
        log.error("Test email failed", extra={"error": str(e)})
        return JSONResponse({"error": str(e) or type(e).__name__}, status_code=500)
    return {"success": True, "message": "Test email sent successfully"}
