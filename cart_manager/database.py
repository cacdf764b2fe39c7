import logging
from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from .config import settings

logger = logging.getLogger(__name__)

# ВАЖНО: Используем обычный psycopg2 драйвер для синхронного кода
# Меняем postgresql+asyncpg на postgresql+psycopg2
database_url = settings.database_url.replace("postgresql+asyncpg://", "postgresql+psycopg2://")


def engine_options(url: str) -> dict:
    """Параметры пула в зависимости от СУБД"""
    if url.startswith("sqlite"):
        # SQLite в памяти живёт в одном соединении
        options = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            options["poolclass"] = StaticPool
        return options

    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
    }


engine = create_engine(
    database_url,
    echo=settings.debug,
    **engine_options(database_url)
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """Dependency для получения сессии БД"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_connection() -> bool:
    """Тест подключения к БД"""
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
