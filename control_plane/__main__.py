"""
Entry point for running the Control Plane API server.

Usage:
    python -m control_plane

Host and port come from CONTROL_PLANE_HOST / CONTROL_PLANE_PORT
(default http://0.0.0.0:8000).
"""
import uvicorn

from logging_setup import setup_logging
from orchestrator.config import get_config

if __name__ == "__main__":
    config = get_config()
    setup_logging(level=config.log_level, use_json=config.log_json)

    uvicorn.run(
        "control_plane.server:app",
        host=config.control_plane_host,
        port=config.control_plane_port,
        log_level=config.log_level.lower(),
    )
