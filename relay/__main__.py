"""
Entry point for running the voice relay.

Usage:
    python -m relay

Starts the FastAPI relay on RELAY_HOST:RELAY_PORT (default 0.0.0.0:8000).
"""
import uvicorn

from logging_setup import setup_logging
from .config import get_config

if __name__ == "__main__":
    config = get_config()

    # Initialize logging
    setup_logging(level=config.log_level, use_json=True)

    uvicorn.run(
        "relay.server:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
