import logging
import os

import uvicorn

from campaign_queue.config import load_settings
from campaign_queue.server import build_app

# Configure logging level from environment
log_level = os.getenv("CQ_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


if __name__ == "__main__":
    settings = load_settings()
    app = build_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
