import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clinic_interop.config import get_settings
from clinic_interop.core.logging import setup_logging
from clinic_interop.database import create_tables
from clinic_interop.routers import hl7, schools

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version)

@app.on_event("startup")
def on_startup():
    setup_logging()
    create_tables()
    logger.info(f"{settings.app_name} started ({settings.environment})")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(hl7.router, prefix="/api/v1")
app.include_router(schools.router, prefix="/api/v1")


@app.get("/health", tags=["Health Checks"])
def health():
    return {"status": "ok", "version": settings.app_version}


if __name__ == "__main__":
    uvicorn.run("clinic_interop.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
