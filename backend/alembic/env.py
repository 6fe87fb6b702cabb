from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from doccontrol.config import settings
from doccontrol.db.base import Base
import doccontrol.models  # noqa: F401 - register users, sessions, refresh tokens, audit log

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)
# Migrations run on the sync driver (psycopg2 / sqlite3)
config.set_main_option("sqlalchemy.url", settings.sync_database_url)

target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)


def run_migrations_offline() -> None:
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
