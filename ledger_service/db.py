from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from common.settings import settings

URL = settings.database_url or (
    f"mysql+mysqlconnector://{settings.mysql_user}:{settings.mysql_password}"
    f"@{settings.mysql_host}:{settings.mysql_port}/{settings.mysql_db}"
)

def make_engine(url: str = URL):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

engine = make_engine()
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
