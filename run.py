#!/usr/bin/env python3
"""
Lending Core Entry Point

Starts the FastAPI server for loan applications, approvals and schedules.
"""

import sys

from lending_core.config import get_config
from lending_core.server import run_server


if __name__ == "__main__":
    config = get_config()
    print("Starting Lending Core...")
    print(f"Storage backend: {config.storage_backend}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug="--reload" in sys.argv)
    except KeyboardInterrupt:
        print("\nShutting down Lending Core...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
