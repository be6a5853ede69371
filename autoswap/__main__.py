from __future__ import annotations

import logging
import os

import uvicorn

from .config import Settings


def main() -> None:
    logging.basicConfig(
        level=os.getenv("AUTOSWAP_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    settings = Settings()
    uvicorn.run("autoswap.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
