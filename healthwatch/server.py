from __future__ import annotations

import os

import uvicorn

from healthwatch.app import create_app
from healthwatch.config import load_config
from healthwatch.logging_setup import configure_logging


def main() -> None:
    host = os.getenv("HEALTHWATCH_HOST", "0.0.0.0").strip() or "0.0.0.0"
    port = int(os.getenv("HEALTHWATCH_PORT", "8000"))
    config = load_config()
    configure_logging(config.log_level)
    app = create_app(config)
    uvicorn.run(app, host=host, port=port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
