import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from config.settings import ConfigurationError
from orchestration.lifecycle import LifecycleError, SignalNotFound
from strategy.execution_types import OrderRejected


logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: Dict):
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.debug("Dropping status subscriber: %s", e)
                self.disconnect(connection)


def _now() -> str:
    return datetime.utcnow().isoformat()


async def _guarded(call):
    """Run a controller operation and map its failures to HTTP status codes."""
    try:
        return await call
    except LifecycleError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SignalNotFound as e:
        raise HTTPException(status_code=404, detail=f"Signal {e} not found")
    except OrderRejected as e:
        raise HTTPException(status_code=422, detail=e.reason)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def create_app(
    controller,
    cors_origins: Sequence[str] = ('*',),
    auto_start: bool = False,
    status_interval_s: float = 1.0,
) -> FastAPI:
    """Build the operator API around one LifecycleController."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if auto_start and not controller.state.running:
            await controller.start()
        try:
            yield
        finally:
            if controller.state.running:
                await controller.stop()

    app = FastAPI(title="Regime Scanner API", version="1.0.0", lifespan=lifespan)
    app.state.controller = controller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    manager = ConnectionManager()
    app.state.connections = manager

    async def push_event(event_type: str, payload: Dict):
        await manager.broadcast({"type": event_type, "timestamp": _now(), "data": payload})

    controller.add_listener(push_event)

    @app.get("/")
    async def root():
        return {
            "service": "Regime Scanner",
            "version": "1.0.0",
            "status": "running" if controller.state.running else "stopped",
        }

    @app.get("/favicon.ico")
    async def favicon():
        return Response(content=b"", media_type="image/x-icon")

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": _now(),
            "system_running": controller.state.running,
            "order_active": controller.state.order_active,
        }

    @app.get("/api/status")
    async def get_status():
        return {**controller.status(), "timestamp": _now()}

    @app.post("/api/bot/start")
    async def start_bot():
        return {"status": await _guarded(controller.start()), "timestamp": _now()}

    @app.post("/api/bot/stop")
    async def stop_bot():
        return {"status": await _guarded(controller.stop()), "timestamp": _now()}

    @app.post("/api/orders/start")
    async def start_orders():
        return {"status": await _guarded(controller.start_orders()), "timestamp": _now()}

    @app.post("/api/orders/stop")
    async def stop_orders():
        return {"status": await _guarded(controller.stop_orders()), "timestamp": _now()}

    @app.get("/api/positions")
    async def get_positions(refresh: bool = False):
        if refresh:
            try:
                positions = await controller.refresh_positions()
            except Exception as e:
                raise HTTPException(status_code=502, detail=f"Position refresh failed: {e}")
        else:
            positions = controller.positions()
        return {"positions": positions, "count": len(positions), "timestamp": _now()}

    @app.post("/api/positions/{symbol}/close")
    async def close_position(symbol: str, side: Optional[str] = None):
        ticket = await _guarded(controller.close_position(symbol, side))
        return {"symbol": symbol.upper(), "order": ticket.as_dict(), "timestamp": _now()}

    @app.get("/api/signals")
    async def get_signals():
        signals = controller.signals()
        return {"signals": signals, "count": len(signals), "timestamp": _now()}

    @app.get("/api/signals/history")
    async def get_signal_history(limit: int = Query(100, ge=1, le=1000)):
        history = controller.signal_history(limit)
        return {"signals": history, "count": len(history), "timestamp": _now()}

    @app.post("/api/signals/{signal_id}/execute")
    async def execute_signal(signal_id: str):
        result = await _guarded(controller.execute_signal(signal_id))
        if not result.success and not result.skipped:
            raise HTTPException(status_code=422, detail=result.error)
        return {"result": result.as_dict(), "timestamp": _now()}

    @app.get("/api/logs")
    async def get_logs(limit: int = Query(100, ge=1, le=1000), level: Optional[str] = None):
        logs = controller.recent_logs(limit, level)
        return {"logs": logs, "count": len(logs), "timestamp": _now()}

    @app.get("/api/notifications")
    async def get_notification_status():
        return {"channels": controller.notification_status(), "timestamp": _now()}

    @app.post("/api/notifications/test")
    async def test_notifications():
        return {"results": await controller.test_notifications(), "timestamp": _now()}

    @app.get("/api/stats")
    async def get_stats():
        return {**(await controller.stats()), "timestamp": _now()}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await manager.connect(websocket)
        try:
            while True:
                await websocket.send_json({
                    "type": "status",
                    "timestamp": _now(),
                    "status": controller.status(),
                    "signals": controller.signals(),
                    "positions": controller.positions(),
                })
                # client messages are ignored; receiving is how a disconnect surfaces
                try:
                    await asyncio.wait_for(websocket.receive_text(), timeout=status_interval_s)
                except asyncio.TimeoutError:
                    pass
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    return app
