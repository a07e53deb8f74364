import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import get_settings
from .core.db import Base, engine
from .public_booking import router as public_booking_router
from .realtime import AppointmentChangeFeed, BookingEventBus, attach_change_feed


settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    detach = attach_change_feed(app.state.appointment_changes)
    logger.info("Booking backend started")
    try:
        yield
    finally:
        detach()
        app.state.booking_events.clear()


app = FastAPI(title="Agenda Booking Backend", lifespan=lifespan)
app.state.booking_events = BookingEventBus()
app.state.appointment_changes = AppointmentChangeFeed()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(public_booking_router)


@app.get("/health")
async def healthcheck():
    return {"ok": True}
