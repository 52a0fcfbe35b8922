from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from stamp_engine.config import DATABASE_URL
from stamp_engine.db import Base

# enregistre toutes les tables sur Base.metadata
from stamp_engine.models.app_user import AppUser  # noqa: F401
from stamp_engine.models.loyalty_earn_event import LoyaltyEarnEvent  # noqa: F401
from stamp_engine.models.loyalty_membership import LoyaltyMembership  # noqa: F401
from stamp_engine.models.loyalty_pass_request import LoyaltyPassRequest  # noqa: F401
from stamp_engine.models.loyalty_program import LoyaltyProgram  # noqa: F401
from stamp_engine.models.loyalty_redemption import LoyaltyRedemption  # noqa: F401


config = context.config
config.set_main_option("sqlalchemy.url", DATABASE_URL)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=DATABASE_URL,
        target_metadata=target_metadata,
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
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
