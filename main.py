"""
Process engine API entry point
"""
import logging

import uvicorn
from dotenv import load_dotenv

# load .env before settings are read
load_dotenv()

from process_engine.api import create_app
from process_engine.config import EngineSettings


settings = EngineSettings.from_env()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

app = create_app(settings=settings)


if __name__ == "__main__":
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower()
    )
