from __future__ import annotations

import click
from sqlalchemy import create_engine

from toolweave.config import get_config
from toolweave.log import logger
from toolweave.orm import Base


@click.group()
def cli():
    pass


@cli.command()
def migrate():
    """Create all tables that do not exist yet."""
    config = get_config()
    engine = create_engine(config.get_db_url(async_mode=False))
    Base.metadata.create_all(engine)
    engine.dispose()
    logger.info("Database migrated")


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def clear(yes: bool):
    """Delete every row of every table."""
    if not yes:
        click.confirm("This will delete all conversations and documents. Continue?", abort=True)
    config = get_config()
    engine = create_engine(config.get_db_url(async_mode=False))
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    engine.dispose()
    logger.info("Database cleared")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=9772, show_default=True, type=int)
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host: str, port: int, reload: bool):
    """Run the API server."""
    import uvicorn

    uvicorn.run("toolweave.app:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    cli()
