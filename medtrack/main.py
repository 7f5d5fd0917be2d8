import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from medtrack.core.config import settings
from medtrack.core.errors import register_exception_handlers
from medtrack.db.database import AsyncSessionLocal, init_models
from medtrack.reminders.notifier import CompositeNotifier, InMemoryNotifier, LoggingNotifier
from medtrack.reminders.scheduler import ReminderScheduler
from medtrack.routes import adherence, medications, refills, reminders

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO), format=settings.log_format)
logger = logging.getLogger(__name__)

alerts = InMemoryNotifier()
reminder_scheduler = ReminderScheduler(AsyncSessionLocal, CompositeNotifier(alerts, LoggingNotifier()))


# ---- Startup / Shutdown ----
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    await init_models()
    if settings.reminders_enabled:
        reminder_scheduler.start()
    yield
    await reminder_scheduler.stop()
    logger.info("Shutting down %s", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Medication schedule, reminder and adherence engine",
    lifespan=lifespan,
)
app.state.alerts = alerts
app.state.reminder_scheduler = reminder_scheduler

# ---- CORS Setup ----
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


# ---- Health Check ----
@app.get("/", tags=["system"])
async def health_check():
    return {"status": "ok", "service": settings.app_name, "reminders": reminder_scheduler.running}


# ---- Register Routes ----
app.include_router(medications.router, prefix="/medications", tags=["Medications"])
app.include_router(refills.router, prefix="/medications", tags=["Supply"])
app.include_router(reminders.router, prefix="/reminders", tags=["Reminders"])
app.include_router(adherence.router, prefix="/adherence", tags=["Adherence"])

# ---- Run Locally ----
if __name__ == "__main__":
    uvicorn.run("medtrack.main:app", host="0.0.0.0", port=8000, reload=True)
