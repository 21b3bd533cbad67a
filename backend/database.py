from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# Check if running in serverless environment (Vercel)
IS_SERVERLESS = os.getenv("VERCEL") == "1" or os.getenv("AWS_LAMBDA_FUNCTION_NAME") is not None

# Priority: Vercel Postgres > Local Postgres > SQLite (in-memory for serverless) > SQLite (file-based for local)
POSTGRES_URL = os.getenv("POSTGRES_URL")  # Vercel Postgres connection string
DATABASE_URL = os.getenv("DATABASE_URL")  # Generic database URL (can be Postgres or SQLite)


def _normalize_postgres_url(url: str) -> str:
    # SQLAlchemy only accepts the postgresql:// scheme
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


if POSTGRES_URL:
    SQLALCHEMY_DATABASE_URL = _normalize_postgres_url(POSTGRES_URL)
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        echo=False,
        pool_pre_ping=True,  # Verify connections before using them
        pool_recycle=300,  # Recycle connections after 5 minutes
    )
    logger.info("✅ Using Vercel Postgres database")
elif DATABASE_URL and DATABASE_URL.startswith("postgres"):
    SQLALCHEMY_DATABASE_URL = _normalize_postgres_url(DATABASE_URL)
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        echo=False,
        pool_pre_ping=True,
    )
    logger.info("✅ Using PostgreSQL database")
elif IS_SERVERLESS or (DATABASE_URL and _is_memory_sqlite(DATABASE_URL)):
    SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
    # StaticPool: every connection shares the same in-memory database
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    logger.warning("⚠️  Using in-memory SQLite (data will not persist - configure Postgres for production)")
else:
    SQLALCHEMY_DATABASE_URL = DATABASE_URL or "sqlite:///./ilaw_ng_bayan.db"
    connect_args = {}
    if "sqlite" in SQLALCHEMY_DATABASE_URL:
        connect_args = {"check_same_thread": False}
    engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=connect_args)
    logger.info("✅ Using SQLite database (local development)")

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
