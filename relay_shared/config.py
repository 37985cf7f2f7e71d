"""
MODULE OVERVIEW:
Relay-wide configuration using Pydantic Settings.

WHAT IS HAPPENING HERE:
Every knob the relay has lives here: where PostgreSQL is, which NOTIFY channels
we LISTEN on, where the search index is, and how the WebSocket side behaves.
Components take a `Settings` instance in their constructor and fall back to the
module-level `settings`, so tests can build an isolated relay with their own values.
"""
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    HOST: str = "0.0.0.0"
    PORT: int = 3011
    LOG_LEVEL: str = "INFO"

    # WebSocket
    WS_PATH: str = "/"
    WS_SEND_QUEUE_SIZE: int = 256

    # PostgreSQL LISTEN/NOTIFY. DATABASE_URL wins over the individual PG_* values.
    DATABASE_URL: str | None = None
    PG_USER: str = "contactr"
    PG_PASSWORD: str = "contactr"
    PG_HOST: str = "localhost"
    PG_PORT: int = 15432
    PG_DATABASE: str = "contactr"

    CHANGE_CHANNEL: str = "contact_changes"
    LOCK_CHANNEL: str = "contact_locks"

    # 0 means a lost upstream connection is fatal immediately
    UPSTREAM_RECONNECT_ATTEMPTS: int = 3
    UPSTREAM_RECONNECT_BASE_DELAY_S: float = 1.0
    UPSTREAM_RECONNECT_MAX_DELAY_S: float = 30.0

    # Meilisearch
    MEILI_URL: str = "http://127.0.0.1:7700"
    MEILI_API_KEY: str | None = "master"
    MEILI_INDEX: str = "contacts"
    MEILI_TIMEOUT_S: float = 5.0

    # Lock/unlock requests are answered with this and never acted upon
    LOCK_RPC_MESSAGE: str = "Please use PostgREST RPC endpoints for lock/unlock operations"
    LOCK_RPC_HINT: str = "POST /rpc/lock_contact or /rpc/unlock_contact"

    class Config:
        env_file = ".env"
        # Tolerate missing env vars to allow easy out-of-the-box execution
        env_file_encoding = 'utf-8'
        extra = 'ignore'

    def pg_connect_kwargs(self) -> dict:
        """Keyword arguments for `asyncpg.connect`."""
        if self.DATABASE_URL:
            dsn = self.DATABASE_URL
            # asyncpg does not understand SQLAlchemy driver suffixes
            for prefix in ("postgresql+asyncpg://", "postgresql+psycopg2://"):
                if dsn.startswith(prefix):
                    dsn = "postgresql://" + dsn[len(prefix):]
            return {"dsn": dsn}
        return {
            "user": self.PG_USER,
            "password": self.PG_PASSWORD,
            "host": self.PG_HOST,
            "port": self.PG_PORT,
            "database": self.PG_DATABASE,
        }

settings = Settings()
