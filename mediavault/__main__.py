"""Command line entry-point for running the API server."""

from __future__ import annotations

import argparse
import logging

from mediavault import create_app
from mediavault.config import load_config

LOGGER = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    """Load configuration and run the Flask server."""

    parser = argparse.ArgumentParser(prog="mediavault")
    parser.add_argument("--config", help="path to a YAML config file", default=None)
    args = parser.parse_args(argv)

    config = load_config(args.config)
    app = create_app(config)

    debug = config.debug
    if debug:
        LOGGER.info("Starting Flask dev server in debug mode")
    else:
        LOGGER.info("Starting Flask server")

    # The reloader would fork a second copy of the background workers.
    app.run(host=config.server.host, port=config.server.port, debug=debug, use_reloader=False, threaded=True)


if __name__ == "__main__":  # pragma: no cover - script entry point
    main()
