from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

# Alembic Config object, gives access to alembic.ini values.
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# ── Point Alembic at the planner models ──────────────────────────────────────
import config as app_config  # noqa: E402
from database import _safe_db_url  # noqa: E402
from models import Base  # noqa: E402

target_metadata = Base.metadata

# DATABASE_URL always wins over alembic.ini; credentials never live in the ini.
config.set_main_option('sqlalchemy.url', _safe_db_url(app_config.DATABASE_URL))


def run_migrations_offline() -> None:
    """Emit SQL for the itineraries and users tables without a live database."""
    context.configure(
        url=config.get_main_option('sqlalchemy.url'),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={'paramstyle': 'named'},
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix='sqlalchemy.',
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        # batch mode lets ALTER-style migrations run on SQLite
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
