from __future__ import annotations

import sys

import uvicorn

from .config.service import ConfigError, load_settings
from .main import configure_logging, create_app


def main() -> int:
    try:
        settings = load_settings()
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1
    configure_logging(settings.log_level)

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
