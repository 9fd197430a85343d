from __future__ import annotations

import logging
import os

import uvicorn

from run_api.app import create_app
from run_api.settings import ApiSettings


def main() -> None:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    host = os.getenv("RUN_API_HOST", "0.0.0.0").strip() or "0.0.0.0"
    port = int(os.getenv("RUN_API_PORT", "3000"))
    settings = ApiSettings()
    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
