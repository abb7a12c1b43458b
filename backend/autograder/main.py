import logging
from typing import Dict

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import JSONResponse

from .config import Settings, get_settings
from .db.session import get_engine
from .grading_routes import router as grading_router
from .logging_config import configure_logging


configure_logging()
logger = logging.getLogger(__name__)
app = FastAPI(title="Autograder Grading Core", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(grading_router)

settings_snapshot = get_settings()
logger.info("Grading core starting with gateway URL: %s", settings_snapshot.gateway_url)
logger.info("Gateway key configured: %s", bool(settings_snapshot.gateway_key))


@app.get("/healthz")
def health(settings: Settings = Depends(get_settings)) -> Dict[str, str]:
    return {"status": "ok", "grading": "enabled" if settings.enabled else "disabled"}


@app.get("/healthz/database")
def database_health():
    try:
        with get_engine().connect() as connection:
            connection.execute(text("SELECT 1"))
    except (SQLAlchemyError, RuntimeError) as exc:
        logger.warning("Database health check failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "unavailable", "detail": str(exc)})
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings_snapshot.host, port=settings_snapshot.port, log_config=None)
