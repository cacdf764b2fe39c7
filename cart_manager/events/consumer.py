import json
import asyncio
from typing import Dict, Any, Callable, Awaitable, Optional
from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaError
import logging

from ..config import settings

logger = logging.getLogger(__name__)

ORDER_CREATED_TOPIC = "order.created"

EventHandler = Callable[[Dict[Any, Any], Dict[Any, Any]], Awaitable[None]]


class EventConsumer:
    def __init__(self, group_id: Optional[str] = None):
        self.consumer: Optional[AIOKafkaConsumer] = None
        self.bootstrap_servers = settings.kafka_bootstrap_servers
        self.group_id = group_id or settings.kafka_group_id
        self.handlers: Dict[str, EventHandler] = {}
        self.running = False

    async def start(self, topics: list[str]):
        """Инициализирует и запускает Kafka consumer"""
        try:
            self.consumer = AIOKafkaConsumer(
                *topics,
                bootstrap_servers=self.bootstrap_servers,
                group_id=self.group_id,
                value_deserializer=lambda m: json.loads(m.decode('utf-8')),
                key_deserializer=lambda k: k.decode('utf-8') if k else None,
                auto_offset_reset=settings.kafka_auto_offset_reset,
                enable_auto_commit=False,  # Ручное подтверждение обработки
                max_poll_records=10,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000
            )
            await self.consumer.start()
            logger.info(f"Kafka consumer started for topics: {topics}")
        except Exception as e:
            logger.error(f"Failed to start Kafka consumer: {e}")
            self.consumer = None
            raise

    async def stop(self):
        """Останавливает Kafka consumer"""
        self.running = False
        if self.consumer:
            try:
                await self.consumer.stop()
                logger.info("Kafka consumer stopped")
            except Exception as e:
                logger.error(f"Error stopping Kafka consumer: {e}")
            finally:
                self.consumer = None

    def register_handler(self, event_type: str, handler: EventHandler):
        """Регистрирует обработчик для определенного типа событий"""
        self.handlers[event_type] = handler
        logger.info(f"Registered handler for event type: {event_type}")

    async def consume_messages(self):
        """Основной цикл обработки сообщений"""
        self.running = True
        logger.info("Starting message consumption...")

        try:
            while self.running:
                try:
                    msg_pack = await self.consumer.getmany(timeout_ms=1000)

                    if not msg_pack:
                        continue

                    for topic_partition, messages in msg_pack.items():
                        for message in messages:
                            await self.process_event(message.value)

                    # Подтверждаем обработку всех сообщений в пакете
                    await self.consumer.commit()

                except KafkaError as e:
                    logger.error(f"Kafka error during message consumption: {e}")
                    await asyncio.sleep(5)
                except Exception as e:
                    logger.error(f"Unexpected error during message consumption: {e}")
                    await asyncio.sleep(1)
        except asyncio.CancelledError:
            logger.info("Message consumption cancelled")
            raise
        finally:
            await self.stop()

    async def process_event(self, event: Dict[Any, Any]) -> bool:
        """Обрабатывает одно событие; True, если нашёлся обработчик и он отработал"""
        try:
            event_type = event.get("event_type")
            event_id = event.get("event_id")
            payload = event.get("payload", {})

            logger.info(f"Processing event {event_id} of type {event_type}")

            handler = self.handlers.get(event_type)
            if not handler:
                logger.warning(f"No handler registered for event type: {event_type}")
                return False

            await handler(payload, event)
            logger.info(f"Successfully processed event {event_id}")
            return True

        except Exception as e:
            logger.error(f"Error processing message: {e}")
            return False

    @property
    def is_running(self) -> bool:
        return self.running and self.consumer is not None
