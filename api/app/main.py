# api/app/main.py
from __future__ import annotations

import logging

from fastapi import FastAPI

from api.app.routes import health, jobs

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Homepage Jobs API",
    description="Operator surface for the background job queue",
    version="0.1.0",
)

app.include_router(health.router)
app.include_router(jobs.router, prefix="/v1")
