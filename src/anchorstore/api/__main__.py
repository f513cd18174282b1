# src/anchorstore/api/__main__.py
from __future__ import annotations

import os

import uvicorn

from anchorstore.env import load_dotenv_if_present


def main() -> None:
    # Load .env early so ANCHORSTORE_* vars exist before anything reads them.
    load_dotenv_if_present()

    # Import after dotenv load (config is read inside create_app).
    from anchorstore.api.app import create_app

    host = os.getenv("ANCHORSTORE_API_HOST", "127.0.0.1")
    port = int(os.getenv("ANCHORSTORE_API_PORT", "8080"))

    uvicorn.run(create_app(), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
