import os

import typer
from sqlalchemy.engine import make_url

from alembic import command
from alembic.config import Config
from knowledge_pipeline.cli.utils import console
from knowledge_pipeline.config.settings import settings
from knowledge_pipeline.database import sync_database_url


def init_db() -> None:
    """Create or upgrade the database schema."""
    url = make_url(settings.database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)

    alembic_cfg = Config(settings.alembic_config)
    # ConfigParser interpolates '%', which can appear in encoded passwords
    alembic_cfg.set_main_option("sqlalchemy.url", sync_database_url(settings.database_url).replace("%", "%%"))
    try:
        command.upgrade(alembic_cfg, "head")
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from e
    console.print(f"[green]Database ready:[/green] {url.render_as_string(hide_password=True)}")
