#!/usr/bin/env python3
"""Unified entry point for the notification sync service.

Starts the API server; the background worker (periodic sync, change
watching, local delivery) runs inside the API process so both share one
scheduler and one reconciler lock.
"""

import logging

import uvicorn

from config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    """Main entry point - start the API with the embedded worker."""
    logger.info("=" * 60)
    logger.info("Reminder Notification Sync - Unified Startup")
    logger.info("=" * 60)
    logger.info(f"  - API Server: http://{settings.API_HOST}:{settings.API_PORT}")
    logger.info(f"  - API Docs: http://{settings.API_HOST}:{settings.API_PORT}/docs")
    logger.info(f"  - Background Worker: {'Active' if settings.WORKER_ENABLED else 'Disabled'}")
    logger.info(f"  - Device: {settings.DEVICE_ID} ({settings.PLATFORM})")

    uvicorn.run(
        "api_server:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info"
    )


if __name__ == "__main__":
    main()
