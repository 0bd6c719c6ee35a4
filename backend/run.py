"""
chatweb backend runner
Run with: python run.py
"""

import logging

import uvicorn
from chatweb.config import settings
from chatweb.utils.logger import setup_logging


if __name__ == "__main__":
    setup_logging()
    logging.getLogger(__name__).info(
        "Starting %s at http://%s:%s (docs at /docs)", settings.APP_NAME, settings.HOST, settings.PORT
    )

    uvicorn.run(
        "chatweb.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
