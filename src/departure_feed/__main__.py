"""departure-feed — serve the scheduled departures feed.

Configured entirely from DEPARTURE_FEED_* environment variables (see
config.py). aiohttp handles SIGINT/SIGTERM: open streams are ended
cleanly and the database is closed before exit.
"""

import logfire
from aiohttp import web

from .config import FeedConfig
from .observability import configure as configure_observability
from .server import create_app
from .service import FeedService


def main() -> None:
    config = FeedConfig.from_env()
    configure_observability(debug=config.debug)

    service = FeedService.from_config(config)
    logfire.info(
        "Departure feed on http://{host}:{port}/schedule (db {db}, tz {tz})",
        host=config.host,
        port=config.port,
        db=config.db_path,
        tz=config.timezone,
    )
    web.run_app(create_app(service), host=config.host, port=config.port, print=None)


if __name__ == "__main__":
    main()
