"""Device API router for lockhub.

Endpoints for finding locks on the LAN, checking their reachability and
issuing arbitrated commands, plus the caller's saved-device list.

All endpoints require a session JWT (see :mod:`lockhub.auth`); the token's
``sub`` is the session id recorded as ``triggered_by``.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from lockhub.arbitration import ArbitrationStore, CommandDispatcher
from lockhub.auth import require_session
from lockhub.config import get_settings
from lockhub.db import get_db, init_db
from lockhub.device import DeviceClient
from lockhub.discovery import (
    ConnectionMonitor,
    DiscoveryProber,
    build_candidates,
    validate_address,
)
from lockhub.errors import (
    DeviceNotFound,
    DeviceRequestError,
    InvalidInput,
    InvalidTransition,
    LockhubError,
    NetworkUnreachable,
    PermissionDenied,
    ScanCancelled,
)
from lockhub.registry import DEFAULT_PULSE_MS, DeviceRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/devices", tags=["devices"])

_client: DeviceClient | None = None


# ── Helpers ───────────────────────────────────────────────────────

def _db() -> sqlite3.Connection:
    init_db()
    return get_db()


def _device_client() -> DeviceClient:
    global _client
    if _client is None:
        _client = DeviceClient(timeout=get_settings().probe_timeout)
    return _client


def _prober() -> DiscoveryProber:
    settings = get_settings()
    return DiscoveryProber(
        device=_device_client(),
        timeout=settings.probe_timeout,
        batch_size=settings.batch_size,
    )


def _monitor(device_uid: str, address: str | None) -> ConnectionMonitor:
    return ConnectionMonitor(
        _prober(), device_uid, address=address, interval=get_settings().monitor_interval
    )


def _dispatcher() -> CommandDispatcher:
    return CommandDispatcher(ArbitrationStore(_db()), device=_device_client())


def _registry() -> DeviceRegistry:
    return DeviceRegistry(_db())


def _candidates(session_id: str, addresses: list[str] | None) -> list[str]:
    if addresses:
        return [validate_address(a) for a in addresses]
    known = _registry().known_addresses(session_id)
    return build_candidates(known, ranges=get_settings().network_ranges)


# ── Error mapping ─────────────────────────────────────────────────

_STATUS_CODES: list[tuple[type[LockhubError], int]] = [
    (PermissionDenied, 403),
    (DeviceNotFound, 404),
    (InvalidTransition, 409),
    (ScanCancelled, 409),
    (InvalidInput, 422),
    (DeviceRequestError, 502),
    (NetworkUnreachable, 503),
]


def status_for(exc: LockhubError) -> int:
    for cls, code in _STATUS_CODES:
        if isinstance(exc, cls):
            return code
    return 500


async def lockhub_error_handler(request: Request, exc: LockhubError) -> JSONResponse:
    """Exception handler registered on the app for every :class:`LockhubError`."""
    content: dict = {"detail": str(exc)}
    if isinstance(exc, PermissionDenied) and exc.holder:
        content["holder"] = exc.holder
    code = status_for(exc)
    if code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content=content)


# ══════════════════════════════════════════════════════════════════
# DISCOVERY
# ══════════════════════════════════════════════════════════════════

class ScanRequest(BaseModel):
    addresses: Optional[list[str]] = None


class LocateRequest(BaseModel):
    uid: str = Field(..., min_length=1)
    addresses: Optional[list[str]] = None


class AddressRequest(BaseModel):
    address: str


@router.post("/scan")
async def scan(req: ScanRequest, session_id: str = Depends(require_session)):
    found = await _prober().scan(_candidates(session_id, req.addresses))
    return {
        "devices": [
            {"address": d.address, "uid": d.uid, "type": d.type, "name": d.name} for d in found
        ]
    }


@router.post("/locate")
async def locate(req: LocateRequest, session_id: str = Depends(require_session)):
    found = await _prober().find(_candidates(session_id, req.addresses), target_uid=req.uid)
    _registry().update_address(session_id, found.uid, found.address)
    return {"address": found.address, "uid": found.uid, "type": found.type, "name": found.name}


@router.get("/{device_uid}/status")
async def connection_status(
    device_uid: str,
    address: Optional[str] = Query(None),
    session_id: str = Depends(require_session),
):
    monitor = _monitor(device_uid, address)
    status = await monitor.check()
    return {"status": status.value, "mode": monitor.mode, "last_seen": monitor.last_seen}


# ══════════════════════════════════════════════════════════════════
# ARBITRATION
# ══════════════════════════════════════════════════════════════════

class CredentialRequest(BaseModel):
    credential_id: str


class BackupCodeRequest(BaseModel):
    code: str


@router.get("/{device_uid}/state")
async def get_state(device_uid: str, session_id: str = Depends(require_session)):
    dispatcher = _dispatcher()
    record = dispatcher.store.read(device_uid)
    return {
        **record.to_dict(),
        "is_controller": record.triggered_by == session_id,
        "can_control": dispatcher.can_control(device_uid, session_id),
    }


@router.post("/{device_uid}/toggle")
async def toggle(device_uid: str, session_id: str = Depends(require_session)):
    return _dispatcher().toggle_lock(device_uid, session_id).to_dict()


@router.post("/{device_uid}/release")
async def release(device_uid: str, session_id: str = Depends(require_session)):
    return _dispatcher().release(device_uid, session_id).to_dict()


@router.get("/{device_uid}/acknowledged")
async def acknowledged(
    device_uid: str,
    timestamp: int = Query(...),
    session_id: str = Depends(require_session),
):
    return {"acknowledged": _dispatcher().store.is_acknowledged(device_uid, timestamp)}


@router.get("/{device_uid}/credentials")
async def list_credentials(device_uid: str, session_id: str = Depends(require_session)):
    return {"credentials": _dispatcher().store.list_credentials(device_uid)}


@router.post("/{device_uid}/credentials", status_code=201)
async def add_credential(
    device_uid: str, req: CredentialRequest, session_id: str = Depends(require_session)
):
    return {"credential_id": _dispatcher().add_credential(device_uid, session_id, req.credential_id)}


@router.delete("/{device_uid}/credentials/{credential_id}")
async def remove_credential(
    device_uid: str, credential_id: str, session_id: str = Depends(require_session)
):
    removed = _dispatcher().remove_credential(device_uid, session_id, credential_id)
    if not removed:
        raise DeviceNotFound(f"credential {credential_id} is not authorized on {device_uid}")
    return {"ok": True}


@router.get("/{device_uid}/backup-code")
async def get_backup_code(device_uid: str, session_id: str = Depends(require_session)):
    return {"code": _dispatcher().store.get_backup_code(device_uid)}


@router.put("/{device_uid}/backup-code")
async def set_backup_code(
    device_uid: str, req: BackupCodeRequest, session_id: str = Depends(require_session)
):
    _dispatcher().set_backup_code(device_uid, session_id, req.code)
    return {"ok": True}


@router.get("/{device_uid}/logs")
async def access_logs(
    device_uid: str,
    limit: int = Query(10, ge=1, le=100),
    session_id: str = Depends(require_session),
):
    entries = _dispatcher().store.recent_access_logs(device_uid, limit=limit)
    return {"logs": [e.to_dict() for e in entries]}


# ══════════════════════════════════════════════════════════════════
# LAN MANAGEMENT
# ══════════════════════════════════════════════════════════════════

class ManagementRequest(BaseModel):
    address: str
    enabled: bool = True


class ScannedCredentialRequest(BaseModel):
    rfid: str
    address: Optional[str] = None


@router.post("/{device_uid}/management")
async def management_mode(
    device_uid: str, req: ManagementRequest, session_id: str = Depends(require_session)
):
    dispatcher = _dispatcher()
    if not req.enabled:
        await dispatcher.stop_management_mode(req.address)
        return {"enabled": False}
    monitor = _monitor(device_uid, req.address)
    status = await monitor.check()
    await dispatcher.start_management_mode(device_uid, session_id, monitor.address, status)
    return {"enabled": True}


@router.get("/{device_uid}/new-rfids")
async def new_rfids(
    device_uid: str,
    address: str = Query(...),
    session_id: str = Depends(require_session),
):
    return {"rfids": await _dispatcher().poll_new_credentials(address)}


@router.post("/{device_uid}/new-rfids", status_code=201)
async def save_new_rfid(
    device_uid: str,
    req: ScannedCredentialRequest,
    background: BackgroundTasks,
    session_id: str = Depends(require_session),
):
    dispatcher = _dispatcher()
    cleaned = await dispatcher.save_scanned_credential(device_uid, session_id, req.rfid, req.address)
    background.add_task(dispatcher.drain)
    return {"credential_id": cleaned}


# ══════════════════════════════════════════════════════════════════
# SAVED DEVICES
# ══════════════════════════════════════════════════════════════════

class AddDeviceRequest(BaseModel):
    uid: str = Field(..., min_length=1)
    mode: str = "solid"
    pulse_duration: int = DEFAULT_PULSE_MS


class RemoveDevicesRequest(BaseModel):
    uids: list[str]


class UpdateAddressRequest(BaseModel):
    ip: Optional[str] = None


@router.get("")
async def list_devices(
    locks_only: bool = Query(False),
    session_id: str = Depends(require_session),
):
    devices = _registry().overview(session_id)
    if locks_only:
        devices = [d for d in devices if d.is_lock]
    on = sum(1 for d in devices if d.state)
    return {
        "devices": [d.to_dict() for d in devices],
        "total": len(devices),
        "on": on,
        "off": len(devices) - on,
    }


@router.post("/register", status_code=201)
async def register(req: AddressRequest, session_id: str = Depends(require_session)):
    address = validate_address(req.address)
    found = await _prober().probe(address)
    if found is None:
        raise DeviceNotFound(f"no device answered at {address}")
    return _registry().register_discovered(session_id, found).to_dict()


@router.post("/add", status_code=201)
async def add_device(req: AddDeviceRequest, session_id: str = Depends(require_session)):
    saved = _registry().add_from_meta(session_id, req.uid, mode=req.mode, pulse_duration=req.pulse_duration)
    return saved.to_dict()


@router.post("/remove")
async def remove_devices(req: RemoveDevicesRequest, session_id: str = Depends(require_session)):
    return {"removed": _registry().remove_devices(session_id, req.uids)}


@router.put("/{device_uid}/address")
async def update_address(
    device_uid: str, req: UpdateAddressRequest, session_id: str = Depends(require_session)
):
    registry = _registry()
    if registry.get_device(session_id, device_uid) is None:
        raise DeviceNotFound(f"device {device_uid} is not in this account")
    registry.update_address(session_id, device_uid, req.ip)
    return {"ok": True}


@router.post("/{device_uid}/switch")
async def toggle_switch(
    device_uid: str, background: BackgroundTasks, session_id: str = Depends(require_session)
):
    registry = _registry()
    device = await registry.toggle_switch(session_id, device_uid)
    background.add_task(registry.drain)
    return device.to_dict()


@router.get("/{device_uid}/switch-logs")
async def switch_logs(device_uid: str, session_id: str = Depends(require_session)):
    return {"logs": _registry().switch_logs(session_id, device_uid)}
