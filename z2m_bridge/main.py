from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect

from . import __version__
from .device import BridgedDevice
from .errors import BridgeError, ConnectivityError, MappingError, UnknownCapabilityError
from .host import LocalHostDevice
from .models import KIND_DEVICE
from .runtime import BridgeRuntime
from .settings import load_settings, read_options

_LOGGER = logging.getLogger("z2m_bridge")
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())


def _configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    for name in ("z2m_bridge", "paho", "uvicorn", "uvicorn.error"):
        logging.getLogger(name).setLevel(level)
    # one line per request is noise unless debugging
    logging.getLogger("uvicorn.access").setLevel(level if debug else logging.WARNING)


def _http_error(e: BridgeError) -> HTTPException:
    if isinstance(e, ConnectivityError):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, UnknownCapabilityError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, MappingError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=409, detail=str(e))


def create_app(runtime: BridgeRuntime | None = None) -> FastAPI:
    if runtime is None:
        settings = load_settings(read_options())
        _configure_logging(settings.debug)
        runtime = BridgeRuntime(settings)

    api = FastAPI(title="Zigbee2MQTT Homey bridge", version=__version__)
    api.state.runtime = runtime
    hub = runtime.hub

    def _device(uid: str) -> BridgedDevice:
        try:
            return runtime.get_device(uid)
        except KeyError:
            raise HTTPException(status_code=404, detail="Not Found")

    @api.on_event("startup")
    async def _startup() -> None:
        await runtime.start()

    @api.on_event("shutdown")
    async def _shutdown() -> None:
        await runtime.stop()

    @api.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    @api.get("/api/bridge")
    async def api_bridge():
        out = runtime.bridge.snapshot()
        out["mqtt_last_error"] = runtime.client.status().last_error
        return out

    @api.get("/api/devices")
    async def api_devices():
        return [runtime.device_snapshot(d) for d in runtime.devices.values()]

    @api.post("/api/devices")
    async def api_devices_add(payload: dict[str, Any]):
        uid = str(payload.get("uid") or "").strip()
        if not uid:
            raise HTTPException(status_code=400, detail="uid required")
        try:
            device = runtime.add_device(
                uid,
                kind=str(payload.get("kind") or KIND_DEVICE),
                friendly_name=str(payload.get("friendly_name") or ""),
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return runtime.device_snapshot(device)

    @api.get("/api/devices/{uid}")
    async def api_device(uid: str):
        return runtime.device_snapshot(_device(uid))

    @api.post("/api/devices/{uid}/capabilities/{capability}")
    async def api_device_capability(uid: str, capability: str, payload: dict[str, Any]):
        device = _device(uid)
        if "value" not in payload:
            raise HTTPException(status_code=400, detail="value required")
        host = device.host
        if not isinstance(host, LocalHostDevice):
            raise HTTPException(status_code=409, detail="host device is not local")
        try:
            await host.user_set(capability, payload["value"])
        except BridgeError as e:
            raise _http_error(e)
        return {"ok": True, "capability": capability, "value": payload["value"]}

    @api.post("/api/devices/{uid}/command")
    async def api_device_command(uid: str, payload: dict[str, Any]):
        device = _device(uid)
        try:
            await device.set_command(payload, "api")
        except BridgeError as e:
            raise _http_error(e)
        return {"ok": True}

    @api.post("/api/devices/{uid}/custom")
    async def api_device_custom(uid: str, request: Request):
        device = _device(uid)
        body = (await request.body()).decode("utf-8", errors="replace")
        if not body.strip():
            raise HTTPException(status_code=400, detail="Empty payload")
        try:
            await device.set_custom_payload(body, "api")
        except BridgeError as e:
            raise _http_error(e)
        return {"ok": True}

    @api.post("/api/devices/{uid}/status")
    async def api_device_status(uid: str):
        device = _device(uid)
        try:
            requested = await device.get_status({"state": ""}, "api")
        except BridgeError as e:
            raise _http_error(e)
        return {"ok": True, "requested": requested}

    @api.post("/api/devices/{uid}/restart")
    async def api_device_restart(uid: str):
        device = _device(uid)
        scheduled = device.restart()
        return {"ok": True, "scheduled": scheduled}

    @api.delete("/api/devices/{uid}")
    async def api_device_delete(uid: str):
        removed = await runtime.delete_device(uid)
        if not removed:
            raise HTTPException(status_code=404, detail="Not Found")
        await hub.broadcast("device_deleted", {"uid": uid})
        return {"ok": True}

    @api.websocket("/ws")
    async def ws_endpoint(ws: WebSocket, uid: str | None = None, since: int = 0):
        await hub.connect(ws, uid=uid)
        try:
            await ws.send_text(
                json.dumps(
                    {
                        "type": "snapshot",
                        "seq": hub.last_seq,
                        "data": runtime.snapshot(),
                        "history": hub.history(uid, since=since),
                    },
                    ensure_ascii=False,
                    default=str,
                )
            )
            while True:
                # clients only listen; reading keeps the disconnect detectable
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await hub.disconnect(ws)

    return api


def main() -> None:
    import uvicorn

    settings = load_settings(read_options())
    _configure_logging(settings.debug)
    app = create_app(BridgeRuntime(settings))

    async def _serve() -> None:
        cfg = uvicorn.Config(app, host="0.0.0.0", port=settings.http_port, log_level="info")
        await uvicorn.Server(cfg).serve()

    asyncio.run(_serve())


if __name__ == "__main__":
    main()
