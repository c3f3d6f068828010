# checkin_guard/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from checkin_guard.database import database, ensure_indexes
from checkin_guard.errors import CheckinError
from checkin_guard.logging_config import setup_logging
from checkin_guard.routes import auth, checkin, organizer, override

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await ensure_indexes(database)
    logger.info("Check-in service started")
    yield


app = FastAPI(title="Enterprise Check-in Service", lifespan=lifespan)


@app.exception_handler(CheckinError)
async def checkin_error_handler(request: Request, exc: CheckinError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers with appropriate prefixes
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(organizer.router, prefix="/organizer", tags=["Organizer"])
app.include_router(checkin.router, prefix="/checkin", tags=["Check-in"])
app.include_router(override.router, prefix="/checkin", tags=["Manager Override"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
