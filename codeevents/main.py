import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from codeevents.config import settings
from codeevents.db import Base, engine
from codeevents.routers import reminders
from codeevents.services.poller import start_poller

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)

    app.state.reminder_poller = None
    if settings.enable_scheduler:
        app.state.reminder_poller = start_poller(settings)
    else:
        logger.info("Reminder poller is disabled via configuration")

    yield

    if app.state.reminder_poller is not None:
        app.state.reminder_poller.stop(wait=False)


app = FastAPI(title="CodeEvents API", debug=settings.debug, lifespan=lifespan)

app.include_router(reminders.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
