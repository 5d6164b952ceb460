from __future__ import annotations

import os

import uvicorn

from cartledger.env import load_dotenv_if_present


def main() -> None:
    # Load .env early so CARTLEDGER_* vars exist before config is read.
    load_dotenv_if_present()

    from cartledger.api.app import create_app
    from cartledger.structured_logging import configure_structured_logging

    configure_structured_logging()

    host = os.getenv("CARTLEDGER_API_HOST", "127.0.0.1")
    port = int(os.getenv("CARTLEDGER_API_PORT", "8080"))

    uvicorn.run(create_app(), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
