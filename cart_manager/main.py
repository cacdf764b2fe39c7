import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from sqlalchemy import text

from . import __version__
from .config import settings
from .database import engine, Base, SessionLocal, check_connection
from .api.routes.cart import router as cart_router
from .events.consumer import EventConsumer, ORDER_CREATED_TOPIC
from .events.handlers import CartEventHandlers
from .exceptions import CartManagerException
from .models import CartItem  # noqa: F401  регистрирует таблицы в Base.metadata
from .services.guest_store import build_guest_cart_store
from .services.kafka_client import kafka_client

# Настройка логирования
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def wait_for_db(max_retries: int = settings.db_connect_retries, delay: int = settings.db_connect_delay):
    """Ожидает готовности базы данных с повторными попытками"""
    retries = 0
    while retries < max_retries:
        try:
            logger.info(f"Attempting to connect to database (attempt {retries + 1}/{max_retries})...")

            db = SessionLocal()
            try:
                db.execute(text("SELECT 1"))
            finally:
                db.close()

            logger.info("✅ Database connection successful!")
            return True

        except OperationalError:
            retries += 1
            if retries >= max_retries:
                logger.error(f"❌ Failed to connect to database after {max_retries} attempts")
                raise

            logger.warning(f"Database not ready, waiting {delay} seconds... (attempt {retries}/{max_retries})")
            time.sleep(delay)

    return False


async def start_order_consumer(app: FastAPI):
    """Подписка на order.created: корзина очищается после оформления заказа"""
    consumer = EventConsumer()
    handlers = CartEventHandlers(app.state.guest_store, events=kafka_client)
    consumer.register_handler("order_created", handlers.handle_order_created)
    await consumer.start([ORDER_CREATED_TOPIC])

    app.state.event_consumer = consumer
    app.state.consumer_task = asyncio.create_task(consumer.consume_messages())


def order_consumer_status(app: FastAPI) -> str:
    if not settings.kafka_consumer_enabled:
        return "disabled"
    consumer = getattr(app.state, "event_consumer", None)
    return "running" if consumer and consumer.is_running else "stopped"


async def stop_order_consumer(app: FastAPI):
    task = getattr(app.state, "consumer_task", None)
    if task:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    consumer = getattr(app.state, "event_consumer", None)
    if consumer:
        await consumer.stop()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения"""
    logger.info("Starting Cart Manager...")

    try:
        logger.info("Waiting for database to be ready...")
        wait_for_db()

        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")

        await kafka_client.start_producer()

        if settings.kafka_consumer_enabled:
            logger.info("Starting Kafka consumer...")
            await start_order_consumer(app)

        logger.info("✅ Cart Manager started successfully!")

    except Exception as e:
        logger.error(f"❌ Failed to start Cart Manager: {e}")
        raise

    yield  # Приложение работает

    logger.info("Shutting down Cart Manager...")

    try:
        await stop_order_consumer(app)
        await kafka_client.stop_producer()
        await app.state.guest_store.close()
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")

    logger.info("✅ Cart Manager shut down successfully!")


# Создаем FastAPI приложение
app = FastAPI(
    title=settings.app_name,
    description="Корзина покупок для гостей и авторизованных пользователей",
    version=__version__,
    debug=settings.debug,
    lifespan=lifespan
)

# Гостевые корзины живут, пока живёт приложение
app.state.guest_store = build_guest_cart_store(settings)

# Middleware для CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # В production указать конкретные домены
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
    expose_headers=[settings.session_header],
)

# Подключаем роуты
app.include_router(cart_router, prefix="/api/v1", tags=["cart"])


# Health check endpoints
@app.get("/health")
async def health_check():
    """Проверка здоровья сервиса"""
    try:
        db_status = "connected" if check_connection() else "disconnected"
        guest_store = app.state.guest_store

        return {
            "status": "healthy",
            "service": settings.app_name,
            "database": db_status,
            "guest_carts": {
                "backend": guest_store.backend,
                "count": await guest_store.count()
            },
            "kafka": kafka_client.status,
            "order_consumer": order_consumer_status(app),
            "version": __version__
        }
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail="Service unhealthy")


@app.get("/")
async def root():
    """Корневой endpoint"""
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "docs": "/docs",
            "cart": "/api/v1/cart"
        }
    }


# Exception handlers
@app.exception_handler(CartManagerException)
async def cart_error_handler(request: Request, exc: CartManagerException):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, "details": exc.details}
    )


@app.exception_handler(500)
async def internal_error_handler(request, exc):
    logger.error(f"Internal server error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": "Something went wrong"}
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "cart_manager.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
