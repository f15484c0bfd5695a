"""
Entry point for running the chat server.

Usage:
    python -m chat_server

Host, port and log level come from HOST, PORT and
LOG_LEVEL (see orchestration/config.py).
"""
import uvicorn
from logging_setup import setup_logging
from orchestration.config import AppConfig

if __name__ == "__main__":
    config = AppConfig.from_env()

    # Initialize logging
    setup_logging(level=config.server.log_level, use_json=True)

    uvicorn.run(
        "chat_server.server:create_app",
        factory=True,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
    )
