"""FastAPI application for the BLE OTA orchestrator."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
import uvicorn

from bleota.utils.logging import setup_logger
from bleota.services.manager import OtaManager
from bleota.services.state_manager import StateManager
from bleota.api.routes import router

HOST = "0.0.0.0"
PORT = 12316
LOG_FILE = "./logs/bleota.log"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    Startup:
    - Initialize logger
    - Initialize StateManager and OtaManager singletons

    Shutdown:
    - Stop any running session so the BLE link is released
    """
    # Startup
    logger = setup_logger("bleota", LOG_FILE, level=logging.INFO)
    logger.info("BLE OTA orchestrator starting up...")

    StateManager()
    manager = OtaManager()

    logger.info(f"BLE OTA orchestrator ready on port {PORT}")

    yield

    # Shutdown
    logger.info("BLE OTA orchestrator shutting down...")
    await manager.stop()


# Create FastAPI application
app = FastAPI(
    title="BLE OTA Orchestrator",
    description="Firmware upgrades for BLE peripherals over a YMODEM link",
    version="1.0.0",
    lifespan=lifespan,
)

# Register API routes
app.include_router(router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "ble-ota-orchestrator", "version": "1.0.0"}


def main():
    """Main entry point for running the server."""
    uvicorn.run(
        app,
        host=HOST,
        port=PORT,
        log_level="info",
        access_log=True,
    )


if __name__ == "__main__":
    main()
