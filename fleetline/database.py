from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    db_user: str = "postgres"
    db_password: str = "postgres"
    db_name: str = "fleetline"
    db_host: str = "db"
    db_port: int = 5432
    database_url: str | None = None

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            "postgresql+psycopg2://"
            f"{self.db_user}:{self.db_password}@"
            f"{self.db_host}:{self.db_port}/{self.db_name}"
        )


def build_session_factory(url: str, **engine_kwargs):
    """Engine plus a session factory configured the way the core expects.

    SQLite connections are shared across worker threads, and an in-memory
    database is pinned to one connection so every session sees the same data.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        engine_kwargs.setdefault("connect_args", {}).setdefault("check_same_thread", False)
        if parsed.database in (None, "", ":memory:"):
            engine_kwargs.setdefault("poolclass", StaticPool)
    else:
        engine_kwargs.setdefault("pool_pre_ping", True)
    bound = create_engine(url, **engine_kwargs)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bound)
    return bound, factory


db_settings = DatabaseSettings()
DATABASE_URL = db_settings.resolved_database_url

engine, SessionLocal = build_session_factory(DATABASE_URL)
Base = declarative_base()


def check_database_connection() -> bool:
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))
    return True
