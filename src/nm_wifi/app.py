"""FastAPI application exposing the Wi-Fi client over HTTP."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from .client import WiFiClient
from .config import ConfigManager, settings_payload
from .errors import FailureKind, WiFiError
from .orchestrator import AttemptState
from .system_log import EventLog
from .version import APP_VERSION

_STATUS_BY_KIND = {
    FailureKind.NOT_FOUND: 404,
    FailureKind.BUSY: 409,
    FailureKind.IN_USE: 409,
    FailureKind.CONFLICT: 409,
    FailureKind.UNSUPPORTED: 422,
    FailureKind.INVALID_PARAMS: 400,
    FailureKind.SECRET_UNAVAILABLE: 403,
    FailureKind.TIMEOUT: 504,
    FailureKind.DAEMON_ERROR: 503,
}


class DevicePayload(BaseModel):
    device: str | None = None


class ConnectPayload(BaseModel):
    ssid: str = Field(min_length=1, max_length=32)
    password: str | None = None
    device: str | None = None
    timeout: float | None = Field(default=None, gt=0, le=600)


class ProfileUpdatePayload(BaseModel):
    version: str
    name: str | None = None
    autoconnect: bool | None = None
    priority: int | None = None
    hidden: bool | None = None


def _http_error(exc: WiFiError) -> HTTPException:
    return HTTPException(
        status_code=_STATUS_BY_KIND.get(exc.kind, 503),
        detail={"error": exc.kind.value, "message": str(exc)},
    )


def create_app(
    config_path: Path | str | None = None,
    *,
    client: WiFiClient | None = None,
) -> FastAPI:
    app = FastAPI(title="nm-wifi", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_manager = ConfigManager(config_path)
    if client is None:
        client = WiFiClient.from_settings(config_manager.effective_settings())
    event_log = client.event_log or EventLog(None)

    app.state.config_manager = config_manager
    app.state.wifi_client = client

    @app.on_event("startup")
    async def startup() -> None:
        try:
            await run_in_threadpool(client.start)
        except WiFiError as exc:
            logger.warning("Unable to start Wi-Fi client: %s", exc)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await run_in_threadpool(client.close)

    @app.get("/api/wifi/devices")
    async def list_devices() -> dict[str, object]:
        devices = await run_in_threadpool(client.list_devices)
        return {"devices": [device.to_dict() for device in devices]}

    @app.get("/api/wifi/status")
    async def get_status(device: str | None = None) -> dict[str, object | None]:
        try:
            status = await run_in_threadpool(client.status, device)
        except WiFiError as exc:
            raise _http_error(exc) from exc
        return status.to_dict()

    @app.get("/api/wifi/networks")
    async def list_networks(device: str | None = None, rescan: bool = False) -> dict[str, object]:
        try:
            networks = await run_in_threadpool(client.list_networks, device, rescan=rescan)
        except WiFiError as exc:
            raise _http_error(exc) from exc
        return {"networks": [network.to_dict() for network in networks]}

    @app.post("/api/wifi/scan")
    async def scan(payload: DevicePayload) -> dict[str, object]:
        try:
            access_points = await run_in_threadpool(client.scan, payload.device)
        except WiFiError as exc:
            raise _http_error(exc) from exc
        return {"access_points": [ap.to_dict() for ap in access_points]}

    @app.post("/api/wifi/connect")
    async def connect(payload: ConnectPayload) -> dict[str, object | None]:
        try:
            result = await run_in_threadpool(
                client.connect,
                payload.ssid,
                payload.password,
                device=payload.device,
                timeout=payload.timeout,
            )
            result.raise_for_failure()
        except WiFiError as exc:
            raise _http_error(exc) from exc
        return result.to_dict()

    @app.post("/api/wifi/cancel")
    async def cancel(payload: DevicePayload) -> dict[str, object | None]:
        try:
            result = await run_in_threadpool(client.cancel, payload.device)
        except WiFiError as exc:
            raise _http_error(exc) from exc
        if result is None:
            return {"state": AttemptState.IDLE.value}
        return result.to_dict()

    @app.post("/api/wifi/disconnect")
    async def disconnect(payload: DevicePayload) -> dict[str, object | None]:
        try:
            device = await run_in_threadpool(client.disconnect, payload.device)
            status = await run_in_threadpool(client.status, device.path)
        except WiFiError as exc:
            raise _http_error(exc) from exc
        return status.to_dict()

    @app.get("/api/wifi/profiles")
    async def list_profiles() -> dict[str, object]:
        profiles = await run_in_threadpool(client.list_profiles)
        return {"profiles": [profile.to_dict() for profile in profiles]}

    @app.patch("/api/wifi/profiles/{profile_id}")
    async def update_profile(profile_id: str, payload: ProfileUpdatePayload) -> dict[str, object | None]:
        changes: dict[str, Any] = payload.model_dump(exclude={"version"}, exclude_none=True)
        try:
            profile = await run_in_threadpool(client.update_profile, profile_id, changes, payload.version)
        except WiFiError as exc:
            raise _http_error(exc) from exc
        return profile.to_dict()

    @app.delete("/api/wifi/profiles/{profile_id}")
    async def forget_profile(profile_id: str) -> dict[str, object]:
        try:
            await run_in_threadpool(client.forget, profile_id)
        except WiFiError as exc:
            raise _http_error(exc) from exc
        return {"deleted": profile_id}

    @app.get("/api/config")
    async def get_config() -> dict[str, object]:
        return settings_payload(config_manager.get_settings())

    @app.post("/api/config")
    async def update_config(payload: dict[str, Any]) -> dict[str, object]:
        try:
            settings = await run_in_threadpool(config_manager.set_settings, payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        client.apply_settings(config_manager.effective_settings())
        return settings_payload(settings)

    @app.get("/api/logs")
    async def get_event_log(
        limit: int = 100,
        category: str | None = None,
        device: str | None = None,
    ) -> dict[str, object]:
        entries = await run_in_threadpool(event_log.tail, limit, category=category, device=device)
        ordered = list(reversed(entries))
        return {"entries": [entry.to_dict() for entry in ordered]}

    return app


__all__ = ["create_app"]
