import logging
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from voice_intake.config import DEFAULT_DATABASE_URL
from voice_intake.entities import Base

logger = logging.getLogger("voice_intake")

# --- Configuration ---
DATABASE_URL = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))


def get_db_engine(url: str | None = None):
    url = url or DATABASE_URL

    if url.startswith("sqlite"):
        logger.info(f"[DB] Using SQLite: {url}")
        # engine callbacks and the asyncio worker thread share the connection pool
        return create_engine(url, connect_args={"check_same_thread": False})

    logger.info(f"[DB] Connecting to {url.split('@')[-1]}")
    return create_engine(url, pool_pre_ping=True, pool_timeout=DB_CONNECT_TIMEOUT)


def create_session_factory(engine=None, *, create_schema: bool = True) -> sessionmaker:
    engine = engine or get_db_engine()
    if create_schema:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
