"""Run the file share server.

Usage:
    python -m fileshare                       # settings from ./fileshare.settings.yaml
    python -m fileshare --settings path.yaml  # explicit settings file
    python -m fileshare --port 8080           # override the configured port
"""
import argparse
from pathlib import Path

import uvicorn

from fileshare.config import load_config, set_config


def main() -> None:
    parser = argparse.ArgumentParser(description="Room file share server")
    parser.add_argument("--settings", type=Path, default=None, help="Settings YAML file")
    parser.add_argument("--host", default=None, help="Bind address (overrides settings)")
    parser.add_argument("--port", type=int, default=None, help="Port (overrides settings)")
    args = parser.parse_args()

    config = load_config(settings_path=args.settings)
    set_config(config)

    from fileshare.main import create_app

    uvicorn.run(
        create_app(config),
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
