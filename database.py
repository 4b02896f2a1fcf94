# database.py

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from config import settings

# 1) URL settings se (config.py already falls back to local SQLite)
DATABASE_URL = settings.DATABASE_URL


def make_engine(url: str, **kwargs):
    # 2) SQLite ke liye special arg; PostgreSQL ke liye nahi
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True, **kwargs)


# 3) Engine create → PostgreSQL / SQLite automatic
engine = make_engine(DATABASE_URL)

# 4) Session Factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# 5) Base Model
Base = declarative_base()


# 6) Dependency (FastAPI routes ke liye)
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
