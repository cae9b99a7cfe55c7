import asyncio
import json
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

import redis.asyncio as redis
import uvicorn
from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .catalog import FlightCatalog
from .clock import Clock, TimerService
from .config import Settings, settings as default_settings
from .database import create_tables, make_engine, make_sessionmaker
from .domain import SeatStatus
from .engine import BookingEngine
from .events import EventPublisher, forward_events
from .exceptions import DomainError
from .gateway import PaymentGateway, SimulatedGateway
from .inventory import SeatInventory
from .logger_config import logger, setup_logging
from .payments import PaymentAttemptTracker
from .schemas import (
    CreateSessionIn,
    ErrorOut,
    FlightOut,
    OrderOut,
    PaymentIn,
    PaymentOut,
    SeatMapEntry,
    SeatsIn,
    SessionOut,
)
from .store import SessionStore


class WSManager:
    """Live seat feed; each socket may narrow the feed to one flight."""

    def __init__(self):
        self.connections: Dict[WebSocket, Optional[str]] = {}

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self.connections[ws] = None

    def subscribe(self, ws: WebSocket, flight_id: str):
        if ws in self.connections:
            self.connections[ws] = flight_id

    def disconnect(self, ws: WebSocket):
        self.connections.pop(ws, None)

    async def broadcast(self, message: dict):
        dead = []
        for ws, flight_id in list(self.connections.items()):
            if flight_id is not None and message.get("flight_id") != flight_id:
                continue
            try:
                await ws.send_json(message)
            except Exception as e:
                logger.debug(f"dropping websocket after failed send: {e}")
                dead.append(ws)
        for d in dead:
            self.disconnect(d)


async def seat_entries(inventory: SeatInventory, flight_id: str, available_only: bool = False) -> List[SeatMapEntry]:
    entries = []
    for state in await inventory.seat_map(flight_id):
        if available_only and state.status is not SeatStatus.FREE:
            continue
        entries.append(SeatMapEntry(
            id=state.seat.id,
            row=state.seat.row,
            column=state.seat.column,
            seat_class=state.seat.seat_class,
            price=state.seat.price,
            status=state.status,
            is_available=state.status is SeatStatus.FREE,
        ))
    return entries


def create_app(
    settings: Optional[Settings] = None,
    redis_factory: Optional[Callable[[], redis.Redis]] = None,
    gateway: Optional[PaymentGateway] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    settings = settings or default_settings
    ws_manager = WSManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL, settings.LOG_DIR)
        db_engine = make_engine(settings.DATABASE_URL)
        await create_tables(db_engine)
        sessionmaker = make_sessionmaker(db_engine)
        if redis_factory is not None:
            redis_client = redis_factory()
        else:
            redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)

        catalog = FlightCatalog(sessionmaker, settings)
        seeded = settings.SEED_DEMO_DATA and await catalog.seed_demo_data()
        await catalog.load()

        inventory = SeatInventory(redis_client, catalog, EventPublisher(redis_client), settings.REDIS_KEY_PREFIX)
        if seeded and settings.DEMO_OCCUPANCY_RATE:
            for flight in catalog.list_flights():
                await inventory.seed_occupancy(flight.id, settings.DEMO_OCCUPANCY_RATE, settings.DEMO_RANDOM_SEED)

        app_clock = clock or Clock()
        tracker = PaymentAttemptTracker(
            gateway or SimulatedGateway(settings.PAYMENT_LATENCY_SECONDS, settings.PAYMENT_FAILURE_RATE),
            app_clock,
            max_attempts=settings.MAX_PAYMENT_ATTEMPTS,
            code_length=settings.PAYMENT_CODE_LENGTH,
            call_timeout=settings.GATEWAY_CALL_TIMEOUT_SECONDS,
        )
        booking_engine = BookingEngine(
            catalog=catalog,
            inventory=inventory,
            store=SessionStore(sessionmaker),
            tracker=tracker,
            timers=TimerService(app_clock, retry_delay=settings.TIMEOUT_RETRY_SECONDS),
            clock=app_clock,
            settings=settings,
        )
        await booking_engine.recover()
        relay = asyncio.create_task(forward_events(redis_client, ws_manager.broadcast))

        app.state.catalog = catalog
        app.state.inventory = inventory
        app.state.engine = booking_engine
        logger.info(f"{settings.PROJECT_NAME} {settings.VERSION} started")
        try:
            yield
        finally:
            relay.cancel()
            await asyncio.gather(relay, return_exceptions=True)
            await booking_engine.shutdown()
            await redis_client.aclose()
            await db_engine.dispose()

    app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan)

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def get_engine(request: Request) -> BookingEngine:
        return request.app.state.engine

    def get_catalog(request: Request) -> FlightCatalog:
        return request.app.state.catalog

    def get_inventory(request: Request) -> SeatInventory:
        return request.app.state.inventory

    errors = {404: {"model": ErrorOut}, 409: {"model": ErrorOut}, 422: {"model": ErrorOut}}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/flights", response_model=List[FlightOut])
    async def list_flights(catalog: FlightCatalog = Depends(get_catalog)):
        return catalog.list_flights()

    @app.get("/flights/{flight_id}/seats", response_model=List[SeatMapEntry], responses=errors)
    async def get_seats(flight_id: str, available_only: bool = False,
                        inventory: SeatInventory = Depends(get_inventory)):
        return await seat_entries(inventory, flight_id, available_only)

    @app.post("/sessions", response_model=SessionOut, status_code=201, responses=errors)
    async def create_session(body: CreateSessionIn, engine: BookingEngine = Depends(get_engine)):
        return await engine.create_session(body.flight_id)

    @app.get("/sessions/{session_id}", response_model=SessionOut, responses=errors)
    async def get_session(session_id: str, engine: BookingEngine = Depends(get_engine)):
        return await engine.get_session(session_id)

    @app.post("/sessions/{session_id}/seats", response_model=SessionOut, responses=errors)
    async def hold_seats(session_id: str, body: SeatsIn, engine: BookingEngine = Depends(get_engine)):
        return await engine.hold_seats(session_id, body.seat_ids)

    @app.post("/sessions/{session_id}/seats/release", response_model=SessionOut, responses=errors)
    async def release_seats(session_id: str, body: SeatsIn, engine: BookingEngine = Depends(get_engine)):
        return await engine.release_seats(session_id, body.seat_ids)

    @app.post("/sessions/{session_id}/confirm-seats", response_model=SessionOut, responses=errors)
    async def confirm_seats(session_id: str, engine: BookingEngine = Depends(get_engine)):
        return await engine.confirm_seats(session_id)

    @app.post("/sessions/{session_id}/back", response_model=SessionOut, responses=errors)
    async def back_to_seats(session_id: str, engine: BookingEngine = Depends(get_engine)):
        return await engine.back_to_seats(session_id)

    @app.post("/sessions/{session_id}/confirm-review", response_model=SessionOut, responses=errors)
    async def confirm_review(session_id: str, engine: BookingEngine = Depends(get_engine)):
        return await engine.confirm_review(session_id)

    @app.post("/sessions/{session_id}/payment", response_model=PaymentOut, responses=errors)
    async def submit_payment(session_id: str, body: PaymentIn, engine: BookingEngine = Depends(get_engine)):
        return await engine.submit_payment_code(session_id, body.code)

    @app.post("/sessions/{session_id}/cancel", response_model=SessionOut, responses=errors)
    async def cancel_session(session_id: str, engine: BookingEngine = Depends(get_engine)):
        return await engine.cancel_session(session_id)

    @app.get("/orders/{order_id}", response_model=OrderOut, responses=errors)
    async def get_order(order_id: str, engine: BookingEngine = Depends(get_engine)):
        return await engine.get_order(order_id)

    # live seat events (held / released / sold) relayed from redis;
    # clients send {"subscribe": "<flight id>"} to get the current map and that flight's events only
    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        await ws_manager.connect(ws)
        try:
            while True:
                raw = await ws.receive_text()
                try:
                    flight_id = str(json.loads(raw)["subscribe"])
                except (ValueError, KeyError, TypeError):
                    await ws.send_json({
                        "error": "bad_request",
                        "message": 'expected {"subscribe": "<flight id>"}',
                        "details": {},
                    })
                    continue
                try:
                    entries = await seat_entries(ws.app.state.inventory, flight_id)
                except DomainError as e:
                    await ws.send_json(e.to_dict())
                    continue
                ws_manager.subscribe(ws, flight_id)
                await ws.send_json({
                    "type": "seat_map",
                    "flight_id": flight_id,
                    "seats": [entry.model_dump(mode="json") for entry in entries],
                })
        except WebSocketDisconnect:
            ws_manager.disconnect(ws)

    app.state.ws_manager = ws_manager
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("skybooker.main:app", host="0.0.0.0", port=8000, reload=True)
