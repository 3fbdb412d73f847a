"""
Server runner for the lending API
"""

from typing import Optional

import uvicorn

from .config import get_config
from .logging_config import setup_logging, get_logger


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server with configured logging"""
    config = get_config()
    setup_logging(level=config.log_level, fmt=config.log_format, log_file=config.log_file)
    get_logger().info("Starting lending API on %s:%s", host or config.api_host, port or config.api_port)

    uvicorn.run(
        "lending_core.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        workers=config.api_workers if not debug else 1,
        reload=debug,
        log_level=config.log_level.lower()
    )
