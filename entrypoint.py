import os

import uvicorn

from logging_config import get_logger, setup_logging

setup_logging(log_level=os.getenv("LOG_LEVEL", "DEBUG"), log_file=os.getenv("LOG_FILE", None))
logger = get_logger(__name__)


def main():
    """Run one gateway process. Scale out by starting more with distinct GATEWAY_INSTANCE_IDs."""
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload = os.getenv("RELOAD", "false").lower() == "true"
    logger.info(f"Starting relay gateway on {host}:{port} (reload={reload})")
    # the app module is imported by uvicorn so reload can re-import it
    uvicorn.run("app:app", host=host, port=port, reload=reload, ws_ping_interval=None)


if __name__ == "__main__":
    main()
