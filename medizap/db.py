from contextlib import contextmanager
from urllib.parse import quote_plus
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
import os

def _build_database_url() -> str:
    # A full DATABASE_URL wins (postgresql://, postgresql+psycopg2:// or sqlite:///)
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    user = os.getenv("DB_USER", "postgres")
    pwd = os.getenv("DB_PASSWORD", "postgres")
    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "medizap")
    sslmode = os.getenv("DB_SSLMODE")  # e.g. require
    base = f"postgresql+psycopg2://{user}:{quote_plus(pwd)}@{host}:{port}/{name}"
    return f"{base}?sslmode={sslmode}" if sslmode else base

DATABASE_URL = _build_database_url()

def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # local runs and tests; request handlers share the engine across threads
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {
        "pool_pre_ping": True,
        "pool_size": int(os.getenv("DB_POOL_SIZE", "5")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "5")),
        "pool_recycle": 1800,
    }

engine = create_engine(
    DATABASE_URL.replace("postgresql://", "postgresql+psycopg2://"),
    **_engine_options(DATABASE_URL),
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

@contextmanager
def get_session():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
