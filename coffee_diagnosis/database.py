from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from coffee_diagnosis.config import settings


def build_engine(database_url: str):
    # SQLite doesn't support pool_size/max_overflow, PostgreSQL does
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False}
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20
    )


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind=None):
    """Create all tables that don't exist yet."""
    from coffee_diagnosis.models import diagnosis_models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
