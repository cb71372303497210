import argparse

from loguru import logger

from boipaben.core.config import get_settings
from boipaben.db import build_db_components, init_db


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create the BoiPaben tables and indexes")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL for this run",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    url = args.database_url or settings.resolved_database_url
    engine, _ = build_db_components(url)
    try:
        init_db(bind=engine)
    finally:
        engine.dispose()
    logger.info("Initialized database schema at {}", engine.url.render_as_string(hide_password=True))


if __name__ == "__main__":
    main()
