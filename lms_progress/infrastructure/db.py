from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from ..config import settings

# sqlite is used for local runs and tests; pool sizing only applies to PostgreSQL
engine_kwargs = {}
if settings.DATABASE_URL.startswith("postgresql"):
    engine_kwargs = dict(
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        connect_args={"client_encoding": "utf8"},
    )
else:
    engine_kwargs = dict(connect_args={"check_same_thread": False})

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, echo=False, **engine_kwargs)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
class Base(DeclarativeBase): pass
def get_db():
    db = SessionLocal()
    try: yield db
    finally: db.close()
