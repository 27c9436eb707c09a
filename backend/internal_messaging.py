import json
import logging
from typing import Optional

import aio_pika
from fastapi import FastAPI

from . import config

logger = logging.getLogger(__name__)


class RabbitMQManager:
    def __init__(self):
        self.connection = None
        self.channel = None

    @property
    def connected(self) -> bool:
        return self.channel is not None

    async def connect(self, url: str):
        logger.info("Initializing RabbitMQ connection")
        try:
            self.connection = await aio_pika.connect_robust(url)
            self.channel = await self.connection.channel()
            logger.info("RabbitMQ connection established successfully")
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

    async def close(self):
        if self.connection:
            await self.connection.close()
            logger.info("RabbitMQ connection closed")
        self.connection = None
        self.channel = None

    async def setup_queue(self, queue_name: str):
        await self.channel.declare_queue(queue_name, durable=True)
        logger.info(f"Queue '{queue_name}' set up successfully")

    async def publish_message(self, queue_name: str, message: Optional[dict | str]):
        if type(message) != str:
            message = json.dumps(message, default=str)
        await self.channel.default_exchange.publish(
            aio_pika.Message(
                body=message.encode(),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            ),
            routing_key=queue_name,
        )
        logger.info(f"Message published to queue: {queue_name}")


rabbitmq_manager = RabbitMQManager()


async def setup_messaging(app: FastAPI):
    if not config.RABBIT_MQ_CONN_STR:
        logger.info("RABBIT_MQ_CONN_STR not set, notification fan-out disabled")
        return
    await rabbitmq_manager.connect(config.RABBIT_MQ_CONN_STR)
    await rabbitmq_manager.setup_queue(config.NOTIFICATION_QUEUE)
    app.state.rabbitmq_manager = rabbitmq_manager


async def cleanup_messaging():
    await rabbitmq_manager.close()


async def publish_notifications(notifications: list[dict]) -> bool:
    """Fan persisted notifications out to the notification queue.

    Returns False when messaging is not configured or publishing failed; the
    notifications are already stored either way.
    """
    if not rabbitmq_manager.connected:
        return False
    try:
        for notification in notifications:
            await rabbitmq_manager.publish_message(
                config.NOTIFICATION_QUEUE, notification
            )
    except Exception as e:
        logger.error(f"Failed to publish notification event: {e}")
        return False
    return True
