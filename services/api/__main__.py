"""
API Entry Point

Allows execution via: python -m services.api
"""

import uvicorn

from services.api.app import create_app
from utils.config import settings
from utils.logging import setup_logging

if __name__ == "__main__":
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    uvicorn.run(create_app(), host=settings.API_HOST, port=settings.API_PORT, log_config=None)
