from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from subject_sync.errors import ConfigurationError
from subject_sync.settings import get_settings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _url() -> str:
    dsn = get_settings().warehouse_dsn
    if not dsn:
        raise ConfigurationError("SUBJECT_SYNC_WAREHOUSE_DSN is not set")
    # psycopg 3 driver for SQLAlchemy
    if dsn.startswith("postgresql://"):
        return "postgresql+psycopg://" + dsn[len("postgresql://") :]
    return dsn


def run_migrations_offline() -> None:
    context.configure(url=_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
