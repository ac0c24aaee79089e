"""
Entry point for running the supervisor via `python -m deploy_supervisor`.

Starts the FastAPI server with uvicorn. Exits with status 1 if the watchdog
stopped on a fatal condition.
"""

import sys

import uvicorn

from .config import config
from .main import app, configure_logging


def main():
    """Run the supervisor server."""
    configure_logging(config)
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        reload=False,
    )
    sys.exit(app.state.exit_code)


if __name__ == "__main__":
    main()
