from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from agency_portal.config import settings

engine = create_engine(
    settings.database_url_fixed,
    pool_pre_ping=True,
    pool_size=5,
    max_overflow=10,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Yield a session per request and always close it."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
