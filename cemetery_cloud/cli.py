"""Command line entry point: database setup, cemetery seeding and the dev server."""
import click
from sqlalchemy.exc import IntegrityError

from cemetery_cloud.config import Settings
from cemetery_cloud.database import Base, build_engine, build_session_factory
from cemetery_cloud.models.domain import Cemetery


def _session_factory(settings: Settings):
    engine = build_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    return build_session_factory(engine)


@click.group()
def cli() -> None:
    """Cemetery Cloud administration."""


@cli.command("init-db")
def init_db() -> None:
    """Create all tables that do not exist yet."""
    settings = Settings.from_env()
    _session_factory(settings)
    click.echo(f"Tables ready on {settings.database_url}")


@cli.command("add-cemetery")
@click.argument("name")
def add_cemetery(name: str) -> None:
    """Register a cemetery. Cemeteries are read-only through the API."""
    name = name.strip()
    if not name:
        raise click.BadParameter("name must not be blank", param_hint="NAME")
    db = _session_factory(Settings.from_env())()
    try:
        cemetery = Cemetery(name=name)
        db.add(cemetery)
        db.commit()
        click.echo(f"Cemetery created: id={cemetery.id} name={cemetery.name}")
    except IntegrityError:
        db.rollback()
        raise click.ClickException(f"Cemetery already exists: {name}")
    finally:
        db.close()


@cli.command("serve")
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=3000, type=int, show_default=True, envvar="PORT")
def serve(host: str, port: int) -> None:
    """Run the API with uvicorn."""
    import uvicorn

    from cemetery_cloud.main import configure_logging

    configure_logging()
    uvicorn.run("cemetery_cloud.main:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    cli()
