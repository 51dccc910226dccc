import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import DATABASE_URL

if not DATABASE_URL:
    # Local development fallback, no PostgreSQL install required
    _db_path = os.path.join(os.path.dirname(__file__), "festival_dev.db")
    DATABASE_URL = f"sqlite:///{_db_path}"

if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def page_bounds(page: int, per_page: int) -> tuple[int, int, int]:
    """Normalize pagination query values and return (page, per_page, offset)."""
    if page < 1:
        page = 1
    if per_page < 1 or per_page > 100:
        per_page = 20
    return page, per_page, (page - 1) * per_page


def get_session_factory():
    """Session factory for work that outlives the request, such as background tasks."""
    return SessionLocal
