# FastAPI surface for UI/map collaborators of the tracking session
# File: fleettrack/api_server.py

"""
Run with: uvicorn fleettrack.api_server:app --port 8000
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from fleettrack import __version__
from fleettrack.config import TrackingConfig
from fleettrack.errors import DroneModeError, DuplicateDroneError, MissionFileError, UnknownDroneError
from fleettrack.models import DroneMode, DroneSpec
from fleettrack.session import TrackingSession
from fleettrack.transport import TelemetryTransport
from fleettrack.waypoints import load_mission_file

logger = logging.getLogger(__name__)

WS_PUSH_INTERVAL = 0.5  # seconds between coalesced entry.updated pushes

# ============================================================================
# WEBSOCKET CONNECTION MANAGER
# ============================================================================

class ConnectionManager:
    """Tracks /ws clients and pushes snapshots of recently updated entries"""

    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self.dirty: Set[str] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    def mark_updated(self, entry_id: str):
        self.dirty.add(entry_id)

    async def broadcast(self, message: dict):
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"Dropping websocket client: {e}")
                self.disconnect(connection)

    async def push_updates(self, session: TrackingSession, interval: float = WS_PUSH_INTERVAL):
        while True:
            await asyncio.sleep(interval)
            if not self.dirty or not self.active_connections:
                continue
            ids, self.dirty = self.dirty, set()
            entries = [session.registry.get(i) for i in sorted(ids)]
            await self.broadcast({
                "type": "entry.updated",
                "timestamp": datetime.now().isoformat(),
                "active_id": session.registry.active_id,
                "entries": [e.to_dict() for e in entries if e is not None],
                "removed": [i for i, e in zip(sorted(ids), entries) if e is None]
            })

# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class WaypointModel(BaseModel):
    lat: float
    lng: float
    alt: Optional[float] = None
    label: Optional[str] = None

class AttachRequest(BaseModel):
    mode: DroneMode = DroneMode.SIMULATED
    name: str = "Helios X1"
    slot: Optional[str] = None          # demo slot for simulated drones
    registry_id: Optional[int] = None   # fleet registry id for live drones
    hostname: Optional[str] = None
    model: Optional[str] = None
    waypoints: Optional[List[WaypointModel]] = None
    auto_start: bool = True

class MissionRequest(BaseModel):
    waypoints: List[WaypointModel] = Field(default_factory=list)

class MissionFileRequest(BaseModel):
    content: str

class TrackingStateRequest(BaseModel):
    active: bool

# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(config: Optional[TrackingConfig] = None,
               transport: Optional[TelemetryTransport] = None) -> FastAPI:
    """Build the API around a fresh tracking session per app lifespan"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        session = TrackingSession(config or TrackingConfig.from_env(), transport=transport)
        manager = ConnectionManager()
        session.on_entry_updated(manager.mark_updated)
        pusher = asyncio.create_task(manager.push_updates(session))

        app.state.session = session
        app.state.manager = manager
        logger.info("Tracking API server started")
        try:
            yield
        finally:
            pusher.cancel()
            session.shutdown()
            logger.info("Tracking API server stopped")

    app = FastAPI(
        title="Drone Fleet Tracking API",
        description="Multi-drone tracking and mission simulation core",
        version=__version__,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _session(request: Request) -> TrackingSession:
        return request.app.state.session

    def _require_entry(session: TrackingSession, entry_id: str):
        entry = session.registry.get(entry_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Drone entry not found")
        return entry

    # ========================================================================
    # DRONE ENDPOINTS
    # ========================================================================

    @app.get("/api/drones")
    async def list_drones(request: Request):
        """List all tracked drones"""
        session = _session(request)
        entries = session.get_all_entries()
        return {
            "count": len(entries),
            "active_id": session.registry.active_id,
            "drones": [e.to_dict() for e in entries]
        }

    @app.get("/api/drones/active")
    async def get_active_drone(request: Request):
        entry = _session(request).get_active_entry()
        if entry is None:
            raise HTTPException(status_code=404, detail="No drone attached")
        return entry.to_dict()

    @app.get("/api/drones/{entry_id}")
    async def get_drone(entry_id: str, request: Request):
        return _require_entry(_session(request), entry_id).to_dict()

    @app.post("/api/drones")
    async def attach_drone(body: AttachRequest, request: Request):
        """Attach a demo slot or a live drone to the tracking view"""
        session = _session(request)
        waypoints = None
        if body.waypoints is not None:
            waypoints = [w.model_dump(exclude_none=True) for w in body.waypoints]

        if body.mode == DroneMode.SIMULATED:
            spec = DroneSpec.demo(slot=body.slot or "HLX-0042", name=body.name,
                                  model=body.model, waypoints=waypoints)
        else:
            if not body.hostname:
                raise HTTPException(status_code=400, detail="Live drones require a hostname")
            key = f"fleet:{body.registry_id}" if body.registry_id is not None else f"host:{body.hostname}"
            spec = DroneSpec(source_key=key, name=body.name, mode=DroneMode.LIVE,
                             hostname=body.hostname, model=body.model,
                             serial=f"ID-{body.registry_id}" if body.registry_id is not None else None,
                             waypoints=waypoints)

        try:
            entry_id = session.attach(spec, auto_start=body.auto_start)
        except DuplicateDroneError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        return {"message": "Drone attached", "entry_id": entry_id}

    @app.delete("/api/drones/{entry_id}")
    async def detach_drone(entry_id: str, request: Request):
        if not _session(request).detach(entry_id):
            raise HTTPException(status_code=404, detail="Drone entry not found")
        return {"message": "Drone detached", "entry_id": entry_id}

    @app.post("/api/drones/{entry_id}/activate")
    async def activate_drone(entry_id: str, request: Request):
        if not _session(request).set_active(entry_id):
            raise HTTPException(status_code=404, detail="Drone entry not found")
        return {"active_id": entry_id}

    @app.post("/api/drones/{entry_id}/restart")
    async def restart_drone(entry_id: str, request: Request):
        session = _session(request)
        _require_entry(session, entry_id)
        return {"entry_id": entry_id, "restarted": session.restart(entry_id)}

    @app.put("/api/drones/{entry_id}/mission")
    async def replace_mission(entry_id: str, body: MissionRequest, request: Request):
        """Replace the mission (reroute); progress restarts on the new route"""
        session = _session(request)
        _require_entry(session, entry_id)
        try:
            entry = session.replace_mission(entry_id, [w.model_dump(exclude_none=True) for w in body.waypoints])
        except (MissionFileError, DroneModeError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"entry_id": entry_id, "waypoints": [w.to_dict() for w in entry.mission]}

    @app.post("/api/drones/{entry_id}/mission-file")
    async def load_mission(entry_id: str, body: MissionFileRequest, request: Request):
        session = _session(request)
        _require_entry(session, entry_id)
        try:
            entry = session.load_mission_file(entry_id, body.content)
        except MissionFileError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"entry_id": entry_id, "waypoints": [w.to_dict() for w in entry.mission]}

    @app.get("/api/drones/{entry_id}/report")
    async def get_report(entry_id: str, request: Request):
        """Flight record snapshot for the entry"""
        session = _session(request)
        try:
            record = session.build_report(entry_id)
        except UnknownDroneError:
            raise HTTPException(status_code=404, detail="Drone entry not found")
        return record.to_dict()

    # ========================================================================
    # MISSION FILES, NOTICES, EVENTS
    # ========================================================================

    @app.post("/api/missions/parse")
    async def parse_mission(body: MissionFileRequest):
        """Parse a QGC WPL plan into a normalized mission without attaching it"""
        try:
            mission = load_mission_file(body.content)
        except MissionFileError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"count": len(mission), "waypoints": [w.to_dict() for w in mission]}

    @app.post("/api/tracking")
    async def set_tracking_state(body: TrackingStateRequest, request: Request):
        _session(request).set_tracking_active(body.active)
        return {"tracking_active": body.active}

    @app.get("/api/notices")
    async def get_notices(request: Request):
        return {"notices": [n.to_dict() for n in _session(request).get_notices()]}

    @app.delete("/api/notices")
    async def dismiss_notices(request: Request):
        _session(request).dismiss_notices()
        return {"message": "Notices dismissed"}

    @app.get("/api/events")
    async def get_recent_events(request: Request, limit: int = 50, event_type: Optional[str] = None):
        """Recent events from the session's event router"""
        events = _session(request).event_router.recent(limit, event_type)
        return {
            "count": len(events),
            "events": [
                {
                    "id": e.id,
                    "type": e.type,
                    "priority": e.priority.name,
                    "timestamp": e.timestamp.isoformat(),
                    "source": e.source,
                    "data": e.data
                }
                for e in events
            ]
        }

    # ========================================================================
    # WEBSOCKET
    # ========================================================================

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Push entry.updated snapshots; clients only listen"""
        manager: ConnectionManager = websocket.app.state.manager
        session: TrackingSession = websocket.app.state.session
        await manager.connect(websocket)
        await websocket.send_json({
            "type": "snapshot",
            "timestamp": datetime.now().isoformat(),
            "active_id": session.registry.active_id,
            "entries": [e.to_dict() for e in session.get_all_entries()]
        })
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    # ========================================================================
    # HEALTH & METRICS
    # ========================================================================

    @app.get("/")
    async def root(request: Request):
        return {
            "name": "Drone Fleet Tracking API",
            "version": __version__,
            "status": "operational",
            "session": _session(request).get_status(),
            "docs": "/docs"
        }

    @app.get("/health")
    async def health_check(request: Request) -> Dict[str, Any]:
        return _session(request).health.get_health_status()

    @app.get("/metrics")
    async def get_metrics(request: Request):
        return _session(request).metrics.get_all_metrics()

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    uvicorn.run(app, host="0.0.0.0", port=8000)
