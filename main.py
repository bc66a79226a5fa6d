import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from campaign_mailer.api import create_app
from campaign_mailer.config_loader import load_settings
from campaign_mailer.service import CampaignService

# Configure logging level from environment
log_level = os.getenv("CMP_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


if __name__ == "__main__":
    settings = load_settings()
    logging.getLogger().setLevel(getattr(logging, settings.log_level, logging.INFO))

    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = CampaignService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = create_app(service, api_token=settings.api_token, lifespan=lifespan)

    uvicorn.run(app, host=settings.host, port=settings.port)
