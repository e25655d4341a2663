import logging
import os

import uvicorn

from kanban.config import LOG_LEVEL


def run() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.environ.get("PORT", "8000"))
    host = os.environ.get("HOST", "0.0.0.0")  # Listen on all interfaces for Docker
    uvicorn.run("kanban.main:app", host=host, port=port, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
