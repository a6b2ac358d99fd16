import asyncio
import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from repairmatch.env import env_csv, env_int
from repairmatch.routers import auth, requests, technician
from repairmatch.services.watchdog import (
    WATCHDOG_BACKGROUND_INTERVAL_SECONDS,
    run_background_sweep,
    timeout_watchdog,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    sweep = None
    if WATCHDOG_BACKGROUND_INTERVAL_SECONDS > 0:
        logger.info("Starting background watchdog every %.1fs", WATCHDOG_BACKGROUND_INTERVAL_SECONDS)
        sweep = asyncio.create_task(run_background_sweep(timeout_watchdog, WATCHDOG_BACKGROUND_INTERVAL_SECONDS))
    try:
        yield
    finally:
        if sweep is not None:
            sweep.cancel()
            try:
                await sweep
            except asyncio.CancelledError:
                pass


app = FastAPI(title="RepairMatch API", version="0.1.0", lifespan=lifespan)

cors_origins = env_csv("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = env_csv("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

app.include_router(auth.router)
app.include_router(requests.router)
app.include_router(technician.router)


@app.get("/health")
def health():
    return {"status": "ok"}


def run() -> None:
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=env_int("PORT", 8000))


if __name__ == "__main__":
    run()
