"""SafePath Backend — FastAPI Routes"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from broadcaster import SafetyBroadcaster
from config import CORS_ORIGINS, HOTSPOT_RADIUS_KM, REPORTS_PATH
from models import (
    HotspotSummary, Location, ModelStatus, ReportSubmission,
    ReportSubmitResponse, RouteRecord, SafetyReport,
)
from report_store import InMemoryReportStore, ReportStore
from route_scoring import ReportValidationError, SafetyController
from safety_service import SafetyModelService

logger = logging.getLogger("safepath.api")


def parse_location(raw: Optional[str]) -> Location:
    """`location` query params arrive as a JSON object: {"lat": .., "lng": ..}."""
    if not raw:
        raise HTTPException(status_code=400, detail="Invalid location data")
    try:
        return Location.model_validate_json(raw)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid location data")


def create_app(
    store: Optional[ReportStore] = None,
    service: Optional[SafetyModelService] = None,
    broadcaster: Optional[SafetyBroadcaster] = None,
) -> FastAPI:
    """Wire store, model service, broadcaster and controller into one app.

    Everything is owned by the returned app (see app.state); nothing is a
    module-level singleton.
    """
    store = store if store is not None else InMemoryReportStore(path=REPORTS_PATH or None)
    service = service if service is not None else SafetyModelService(store)
    broadcaster = broadcaster if broadcaster is not None else SafetyBroadcaster()
    controller = SafetyController(service, store, broadcaster)

    app = FastAPI(title="SafePath Safety API", version="1.0.0")
    app.state.store = store
    app.state.service = service
    app.state.broadcaster = broadcaster
    app.state.controller = controller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def report_validation_handler(request: Request, exc: RequestValidationError):
        # Malformed report bodies are client errors, same as missing fields
        if request.url.path == "/api/safety/report":
            bad_location = any("location" in err.get("loc", ()) for err in exc.errors())
            detail = "Invalid location data" if bad_location else "Invalid report data"
            return JSONResponse(status_code=400, content={"detail": detail})
        return await request_validation_exception_handler(request, exc)

    # ─────────────────────────── Lifecycle ──────────────────────────

    @app.on_event("startup")
    async def startup_event():
        service.initialize()
        await broadcaster.start()
        logger.info(f"Safety model {service.state.value}, version {service.model_version}")

    @app.on_event("shutdown")
    async def shutdown_event():
        await broadcaster.stop()
        controller.close()
        service.close()

    # ─────────────────────────── Safety API ─────────────────────────

    @app.get("/api/safety/routes", response_model=list[RouteRecord])
    async def get_safe_routes(location: Optional[str] = None, force: bool = False):
        origin = parse_location(location)
        return await controller.score_routes(origin, force=force)

    @app.get("/api/safety/reports", response_model=list[SafetyReport])
    async def get_reports(location: Optional[str] = None, radius: float = 1.0):
        origin = parse_location(location)
        return await controller.find_reports(origin, radius)

    @app.post("/api/safety/report", response_model=ReportSubmitResponse, status_code=201)
    async def submit_report(submission: ReportSubmission):
        try:
            report = await controller.submit_report(submission)
        except ReportValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return ReportSubmitResponse(success=True, report=report)

    @app.get("/api/safety/model-status", response_model=ModelStatus)
    async def get_model_status():
        return controller.model_status()

    @app.get("/api/safety/hotspots", response_model=HotspotSummary)
    def get_hotspots(location: Optional[str] = None, radius: float = HOTSPOT_RADIUS_KM):
        origin = parse_location(location)
        return service.get_nearby_hotspots(origin.lat, origin.lng, radius)

    @app.websocket("/ws/safety")
    async def safety_updates(websocket: WebSocket):
        await broadcaster.connect(websocket)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.disconnect(websocket)

    # ─────────────────────────── Utility ────────────────────────────

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "model": "xgboost", "modelVersion": service.model_version}

    return app
