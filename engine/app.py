import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from config import settings
from db import engine
from errors import EngineError
from models import Base
from routers import campaigns, dice, participants, realtime, story, turns

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Campaign Session Engine",
    version="0.1.0",
    docs_url="/docs",
)

# Create all tables on startup
Base.metadata.create_all(bind=engine)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


app.include_router(campaigns.router)
app.include_router(participants.router)
app.include_router(turns.router)
app.include_router(dice.router)
app.include_router(story.router)
app.include_router(realtime.router)
