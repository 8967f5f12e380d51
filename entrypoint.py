import os
import uvicorn
from constants import PRESENCE_BACKEND
from logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def main():
    """Run the relay under uvicorn, configured from the environment."""
    setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"), log_file=os.getenv("LOG_FILE"))
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload = os.getenv("RELOAD", "false").lower() == "true"
    workers = 1 if reload else int(os.getenv("WORKERS", 1))

    if workers > 1 and PRESENCE_BACKEND != "redis":
        # each worker would keep its own roster and buffer
        logger.warning(f"Running {workers} workers with PRESENCE_BACKEND={PRESENCE_BACKEND}, rooms are not shared")

    logger.info(f"Starting signal relay on {host}:{port} (workers={workers}, reload={reload})")
    uvicorn.run("app:app", host=host, port=port, reload=reload, workers=workers, log_config=None)


if __name__ == "__main__":
    main()
