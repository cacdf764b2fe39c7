"""
Публикация событий корзины в Kafka.

Изменение корзины к моменту публикации уже зафиксировано, поэтому ошибка
брокера только логируется: publish_event возвращает False и не бросает.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaTimeoutError

from ..config import settings

logger = logging.getLogger(__name__)

SERVICE_NAME = "cart-manager"

# Топики событий корзины
CART_ITEM_ADDED = "cart.item.added"
CART_ITEM_UPDATED = "cart.item.updated"
CART_ITEM_REMOVED = "cart.item.removed"
CART_CLEARED = "cart.cleared"
CART_MERGED = "cart.merged"

CART_TOPICS = (CART_ITEM_ADDED, CART_ITEM_UPDATED, CART_ITEM_REMOVED, CART_CLEARED, CART_MERGED)


def build_event(event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Конверт события, общий для всех топиков корзины"""
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "event_timestamp": datetime.now(timezone.utc).isoformat(),
        "producer_service": SERVICE_NAME,
        "payload": payload
    }


def serialize_value(value: Dict[str, Any]) -> bytes:
    # Значения без JSON-представления (datetime) пишутся строкой
    return json.dumps(value, default=str).encode("utf-8")


def serialize_key(key: Optional[str]) -> Optional[bytes]:
    return key.encode("utf-8") if key else None


class KafkaClient:
    """
    Публикатор событий корзины.

    Ключ сообщения - ключ владельца корзины (user:<id> или guest:<id>),
    так что все события одной корзины попадают в одну партицию по порядку.
    """

    def __init__(
            self,
            enabled: Optional[bool] = None,
            bootstrap_servers: Optional[str] = None,
            producer_factory: Callable[..., AIOKafkaProducer] = AIOKafkaProducer
    ):
        self.producer: Optional[AIOKafkaProducer] = None
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self.enabled = settings.kafka_enabled if enabled is None else enabled
        self.producer_factory = producer_factory

    @property
    def status(self) -> str:
        """Состояние для /health"""
        if not self.enabled:
            return "disabled"
        return "connected" if self.producer else "disconnected"

    async def start_producer(self):
        """Запуск Kafka продюсера"""
        if not self.enabled:
            logger.info("Kafka publishing disabled, producer not started")
            return

        producer = self.producer_factory(
            bootstrap_servers=self.bootstrap_servers,
            client_id=SERVICE_NAME,
            value_serializer=serialize_value,
            key_serializer=serialize_key,
            retry_backoff_ms=1000,
            request_timeout_ms=30000,
            acks="all",
            enable_idempotence=True
        )
        try:
            await producer.start()
        except KafkaConnectionError as e:
            logger.error(f"❌ Kafka at {self.bootstrap_servers} unreachable: {e}")
            raise

        self.producer = producer
        logger.info(f"✅ Kafka producer started, publishing to {', '.join(CART_TOPICS)}")

    async def stop_producer(self):
        """Остановка Kafka продюсера"""
        if not self.producer:
            return

        producer, self.producer = self.producer, None
        try:
            await producer.stop()
            logger.info("✅ Kafka producer stopped")
        except Exception as e:
            logger.error(f"❌ Error stopping Kafka producer: {e}")

    async def publish_event(
            self,
            topic: str,
            event_type: str,
            payload: Dict[str, Any],
            key: Optional[str] = None
    ) -> bool:
        """Отправить событие; True, если брокер подтвердил запись"""
        if not self.enabled:
            return False

        if not self.producer:
            logger.warning(f"Kafka producer not started, dropping {event_type} for {key}")
            return False

        event = build_event(event_type, payload)
        try:
            record_metadata = await self.producer.send_and_wait(topic, value=event, key=key)
        except KafkaTimeoutError:
            logger.error(f"❌ Timed out publishing {event_type} to {topic} for {key}")
            return False
        except Exception as e:
            logger.error(f"❌ Error publishing {event_type} to {topic} for {key}: {e}")
            return False

        logger.info(
            f"📤 {event_type} for {key} -> {topic} "
            f"(partition: {record_metadata.partition}, offset: {record_metadata.offset})"
        )
        return True


# Глобальный экземпляр клиента
kafka_client = KafkaClient()


async def get_kafka_client() -> KafkaClient:
    """Dependency для получения Kafka клиента"""
    return kafka_client
