"""
Kafka action publisher.

Works with Apache Kafka, Amazon MSK, Redpanda and any other Kafka API
compatible broker.

Invariants:
    - Producer uses acks=all and the idempotent producer, so a retried
      send never duplicates an action
    - publish() waits for the broker acknowledgment (send_and_wait)
    - A lost connection marks the publisher disconnected

How to change safely:
    - Test against a real broker before deploying
    - Keep the action guid as message key; workers rely on per-action order
"""

from __future__ import annotations

import logging
import time
from typing import Any

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError

from ..config import KafkaConfig
from ..errors import PublishError
from .base import PublishReceipt, encode_message

logger = logging.getLogger(__name__)


class KafkaActionPublisher:
    """Kafka implementation of the ActionPublisher protocol.

    Durability configuration:
        - acks='all': Wait for all in-sync replicas
        - enable_idempotence=True: Prevent duplicates on retry

    Example:
        >>> publisher = KafkaActionPublisher(KafkaConfig(brokers="localhost:9092"))
        >>> await publisher.connect()
        >>> await publisher.publish("q.actions.inbox", {"guid": "...", "type": "..."})
    """

    def __init__(self, config: KafkaConfig) -> None:
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._producer is not None

    def _producer_config(self) -> dict[str, Any]:
        producer_config: dict[str, Any] = {
            "bootstrap_servers": self.config.brokers,
            "client_id": self.config.client_id,
            "acks": self.config.acks,
            "enable_idempotence": self.config.enable_idempotence,
            "linger_ms": 5,
            "request_timeout_ms": self.config.request_timeout_ms,
            "retry_backoff_ms": 100,
        }

        if self.config.security_protocol != "PLAINTEXT":
            producer_config["security_protocol"] = self.config.security_protocol

        if self.config.sasl_mechanism:
            producer_config["sasl_mechanism"] = self.config.sasl_mechanism
            producer_config["sasl_plain_username"] = self.config.sasl_username
            producer_config["sasl_plain_password"] = self.config.sasl_password

        if self.config.ssl_cafile:
            from aiokafka.helpers import create_ssl_context

            producer_config["ssl_context"] = create_ssl_context(cafile=self.config.ssl_cafile)

        return producer_config

    async def connect(self) -> None:
        """Start the producer.

        Raises:
            PublishError: If the broker cannot be reached
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(**self._producer_config())
            await self._producer.start()
            self._connected = True
        except KafkaError as e:
            self._connected = False
            self._producer = None
            raise PublishError(f"Failed to connect to Kafka: {e}", code=5302) from e

        logger.info(
            "Connected to Kafka",
            extra={
                "brokers": self.config.brokers,
                "acks": self.config.acks,
                "idempotent": self.config.enable_idempotence,
            },
        )

    async def close(self) -> None:
        """Flush pending sends and stop the producer."""
        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning("Error closing producer", extra={"error": str(e)})
            self._producer = None

        self._connected = False
        logger.info("Kafka producer closed")

    async def publish(self, queue: str, message: dict[str, Any]) -> PublishReceipt:
        """Send one action envelope and wait for the acknowledgment.

        Raises:
            PublishError: If not connected, on timeout, or on broker errors
        """
        guid, payload = encode_message(message)
        if not self._producer:
            raise PublishError("Not connected to Kafka", guid=guid, code=5302)

        try:
            metadata = await self._producer.send_and_wait(
                queue,
                value=payload,
                key=guid.encode("utf-8"),
            )
        except KafkaTimeoutError as e:
            logger.error("Action publish timed out", extra={"guid": guid, "queue": queue})
            raise PublishError(f"Kafka send timed out: {e}", guid=guid, code=5301) from e
        except KafkaConnectionError as e:
            self._connected = False
            logger.error("Kafka connection lost", extra={"guid": guid, "queue": queue})
            raise PublishError(f"Kafka connection lost: {e}", guid=guid, code=5302) from e
        except KafkaError as e:
            logger.error("Action publish failed", extra={"guid": guid, "queue": queue, "error": str(e)})
            raise PublishError(f"Kafka send failed: {e}", guid=guid) from e

        receipt = PublishReceipt(
            queue=metadata.topic,
            guid=guid,
            partition=metadata.partition,
            offset=metadata.offset,
            timestamp_ms=max(metadata.timestamp or 0, 0) or int(time.time() * 1000),
        )

        logger.debug(
            "Action published to Kafka",
            extra={
                "guid": guid,
                "queue": queue,
                "partition": receipt.partition,
                "offset": receipt.offset,
            },
        )
        return receipt

    async def health_check(self) -> bool:
        """True if the producer can fetch cluster metadata."""
        if not self._producer:
            return False
        try:
            await self._producer.client.fetch_all_metadata()
        except KafkaError as e:
            logger.warning("Kafka health check failed", extra={"error": str(e)})
            return False
        return True
