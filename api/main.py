"""
FastAPI backend for Inbox Rooms.
Provides REST API endpoints for provider connections, room messages, sync and
the CRM demo collaborator.
"""

import configparser
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from api.config import build_inbox_service, load_config
from api.email.errors import EmailIntegrationError, RoomNotFound, SyncInProgress
from api.email.providers.base import EmailFilter
from api.email.service import InboxService

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Global instances
config: Optional[configparser.ConfigParser] = None
inbox_service: Optional[InboxService] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global config, inbox_service

    # Startup
    logger.info("Starting Inbox Rooms API...")
    config = load_config()

    try:
        inbox_service = build_inbox_service(config)
        logger.info("Inbox service initialized")

        if config.getboolean('sync', 'auto_start', fallback=True):
            await inbox_service.start_auto_sync()
    except Exception as e:
        logger.warning(f"Could not initialize inbox service: {e}")

    yield

    # Shutdown
    logger.info("Shutting down Inbox Rooms API...")
    if inbox_service:
        await inbox_service.stop_auto_sync()


app = FastAPI(
    title="Inbox Rooms API",
    description="REST API for multi-provider email rooms with AI meeting detection",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============ Pydantic Models ============

class StarRequest(BaseModel):
    starred: bool = Field(True, description="Star (true) or unstar (false) the message")


class RoomSettingsUpdate(BaseModel):
    auto_sync: Optional[bool] = None
    sync_interval: Optional[int] = Field(None, ge=1, description="Minutes between automatic syncs")
    ai_parsing: Optional[bool] = None
    meeting_detection: Optional[bool] = None
    calendar_integration: Optional[bool] = None
    crm_sync: Optional[bool] = None


def _require_service() -> InboxService:
    if not inbox_service:
        raise HTTPException(status_code=503, detail="Inbox service not initialized")
    return inbox_service


def _error_response(e: Exception):
    """Map an engine failure onto an HTTP error or a failure body."""
    if isinstance(e, RoomNotFound):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SyncInProgress):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, EmailIntegrationError):
        logger.warning(f"Email integration error ({e.error_type}): {e}")
        return {"success": False, **e.to_dict()}
    logger.error(f"Unexpected error: {e}")
    return {"success": False, "error": str(e)}


# ============ Health ============

@app.get("/health")
async def health_check():
    """Liveness check."""
    return {
        "status": "healthy",
        "inbox_service": inbox_service is not None,
    }


# ============ Email Providers ============

@app.get("/api/email/providers")
async def list_email_providers():
    """List supported email providers with their connection state."""
    service = _require_service()

    try:
        return {"success": True, "providers": [p.to_dict() for p in service.get_providers()]}
    except Exception as e:
        return _error_response(e)


@app.post("/api/email/providers/{provider_id}/connect")
async def connect_email_provider(provider_id: str):
    """Sign in to a provider and create or reactivate its room."""
    service = _require_service()

    try:
        record, room = await service.connect_provider(provider_id)
        return {"success": True, "provider": record.to_dict(), "room": room.to_dict()}
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Provider not found: {provider_id}")
    except Exception as e:
        return _error_response(e)


@app.post("/api/email/providers/{provider_id}/disconnect")
async def disconnect_email_provider(provider_id: str):
    """Revoke the provider session and deactivate its rooms."""
    service = _require_service()

    try:
        record = await service.disconnect_provider(provider_id)
        return {"success": True, "provider": record.to_dict()}
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Provider not found: {provider_id}")
    except Exception as e:
        return _error_response(e)


# ============ Rooms ============

@app.get("/api/email/rooms")
async def list_rooms(include_inactive: bool = False):
    """List rooms (active only unless include_inactive is set)."""
    service = _require_service()
    rooms = service.get_rooms(active_only=not include_inactive)
    return {"success": True, "rooms": [r.to_dict() for r in rooms]}


@app.get("/api/email/rooms/{room_id}/messages")
async def list_room_messages(
    room_id: str,
    is_read: Optional[bool] = None,
    is_starred: Optional[bool] = None,
    is_important: Optional[bool] = None,
    has_attachments: Optional[bool] = None,
    sender: Optional[str] = None,
    subject: Optional[str] = None,
    query: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    max_results: int = 50
):
    """List messages in a room with optional filters."""
    service = _require_service()

    try:
        # Parse dates
        from_dt = datetime.fromisoformat(date_from) if date_from else None
        to_dt = datetime.fromisoformat(date_to) if date_to else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid date: {e}")

    filter = EmailFilter(
        is_read=is_read,
        is_starred=is_starred,
        is_important=is_important,
        has_attachments=has_attachments,
        sender=sender,
        subject=subject,
        query=query,
        date_from=from_dt,
        date_to=to_dt,
    )

    try:
        messages = await service.get_messages(room_id, filter, max_results)
        return {"success": True, "messages": [m.to_dict() for m in messages], "count": len(messages)}
    except Exception as e:
        return _error_response(e)


@app.post("/api/email/rooms/{room_id}/messages/{message_id}/read")
async def mark_message_read(room_id: str, message_id: str):
    """Mark a message as read."""
    service = _require_service()

    try:
        success = await service.mark_as_read(room_id, message_id)
        return {"success": success}
    except Exception as e:
        return _error_response(e)


@app.post("/api/email/rooms/{room_id}/messages/{message_id}/star")
async def star_message(room_id: str, message_id: str, request: StarRequest = StarRequest()):
    """Star or unstar a message."""
    service = _require_service()

    try:
        success = await service.set_starred(room_id, message_id, request.starred)
        return {"success": success, "starred": request.starred}
    except Exception as e:
        return _error_response(e)


@app.put("/api/email/rooms/{room_id}/settings")
async def update_room_settings(room_id: str, request: RoomSettingsUpdate):
    """Partially update a room's settings."""
    service = _require_service()

    try:
        room = service.update_room_settings(room_id, **request.model_dump(exclude_unset=True))
        return {"success": True, "room": room.to_dict()}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        return _error_response(e)


# ============ Sync ============

@app.post("/api/email/rooms/{room_id}/sync")
async def sync_room(room_id: str):
    """Run a sync pass for a room now."""
    service = _require_service()

    try:
        status = await service.sync_room(room_id)
        return {"success": True, "status": status.to_dict()}
    except Exception as e:
        return _error_response(e)


@app.get("/api/email/rooms/{room_id}/sync/status")
async def get_room_sync_status(room_id: str):
    """Get the status of the latest sync pass for a room."""
    service = _require_service()

    try:
        status = service.get_sync_status(room_id)
        return {
            "success": True,
            "is_syncing": service.scheduler.is_syncing(room_id),
            "status": status.to_dict() if status else None,
        }
    except Exception as e:
        return _error_response(e)


@app.post("/api/email/sync/start")
async def start_auto_sync():
    """Start the auto-sync scheduler."""
    service = _require_service()
    await service.start_auto_sync()
    return {"success": True, **service.scheduler.get_status()}


@app.post("/api/email/sync/stop")
async def stop_auto_sync():
    """Stop the auto-sync scheduler."""
    service = _require_service()
    await service.stop_auto_sync()
    return {"success": True, **service.scheduler.get_status()}


@app.get("/api/email/sync/scheduler")
async def get_scheduler_status():
    """Get auto-sync scheduler state."""
    service = _require_service()
    return {"success": True, **service.scheduler.get_status()}


# ============ Calendar ============

def _require_calendar():
    service = _require_service()
    if service.calendar is None:
        raise HTTPException(status_code=503, detail="Calendar not initialized")
    return service.calendar


@app.get("/api/calendar")
async def get_calendar_status():
    """Get the calendar collaborator and whether it is signed in."""
    calendar = _require_calendar()
    return {"success": True, "calendar": calendar.get_status()}


@app.post("/api/calendar/connect")
async def connect_calendar():
    """Sign in to the calendar used for auto-scheduling."""
    calendar = _require_calendar()

    try:
        await calendar.connect()
        return {"success": True, "calendar": calendar.get_status()}
    except Exception as e:
        return _error_response(e)


@app.post("/api/calendar/disconnect")
async def disconnect_calendar():
    """Revoke the calendar session."""
    calendar = _require_calendar()

    try:
        await calendar.disconnect()
        return {"success": True, "calendar": calendar.get_status()}
    except Exception as e:
        return _error_response(e)


# ============ CRM ============

def _require_crm():
    service = _require_service()
    if service.crm is None:
        raise HTTPException(status_code=503, detail="CRM not initialized")
    return service.crm


@app.get("/api/crm/providers")
async def list_crm_providers():
    """List CRM providers and whether each is connected."""
    crm = _require_crm()
    return {"success": True, "providers": [p.to_dict() for p in crm.get_providers()]}


@app.post("/api/crm/providers/{provider_id}/connect")
async def connect_crm_provider(provider_id: str):
    """Mark a CRM provider connected."""
    crm = _require_crm()
    if not crm.connect_provider(provider_id):
        raise HTTPException(status_code=404, detail=f"CRM provider not found: {provider_id}")
    return {"success": True, "providers": [p.to_dict() for p in crm.get_providers()]}


@app.post("/api/crm/providers/{provider_id}/disconnect")
async def disconnect_crm_provider(provider_id: str):
    """Mark a CRM provider disconnected."""
    crm = _require_crm()
    if not crm.disconnect_provider(provider_id):
        raise HTTPException(status_code=404, detail=f"CRM provider not found: {provider_id}")
    return {"success": True, "providers": [p.to_dict() for p in crm.get_providers()]}


@app.get("/api/crm/contacts")
async def list_crm_contacts():
    """List contacts synced from parsed email."""
    crm = _require_crm()
    return {"success": True, "contacts": [c.to_dict() for c in crm.get_contacts()]}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
