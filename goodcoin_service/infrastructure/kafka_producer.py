"""
Kafka producer for publishing feed and ledger events
"""
from aiokafka import AIOKafkaProducer
from typing import Optional, Dict, Any
import json
import logging

from ..config import Settings, settings as default_settings
from ..domain.models import CoinPurchase, Donation, Post, format_amount

logger = logging.getLogger(__name__)


class KafkaProducerManager:
    """Manage Kafka producer for event publishing"""

    def __init__(self, settings: Settings = default_settings):
        self.settings = settings
        self.producer: Optional[AIOKafkaProducer] = None

    async def start(self):
        """Start Kafka producer"""
        if not self.settings.KAFKA_ENABLED:
            logger.warning("Kafka is disabled")
            return

        try:
            self.producer = AIOKafkaProducer(
                bootstrap_servers=self.settings.KAFKA_BOOTSTRAP_SERVERS,
                value_serializer=lambda v: json.dumps(v).encode('utf-8'),
                key_serializer=lambda k: k.encode('utf-8') if k else None,
            )
            await self.producer.start()
            logger.info(f"Kafka producer started at {self.settings.KAFKA_BOOTSTRAP_SERVERS}")
        except Exception as e:
            logger.error(f"Failed to start Kafka producer: {e}")
            self.producer = None

    async def stop(self):
        """Stop Kafka producer"""
        if self.producer:
            await self.producer.stop()
            self.producer = None
            logger.info("Kafka producer stopped")

    async def publish_event(
        self,
        topic: str,
        key: str,
        event_data: Dict[str, Any]
    ) -> bool:
        """
        Publish an event to Kafka

        Args:
            topic: Kafka topic name
            key: Message key
            event_data: Event payload

        Returns:
            True if successful, False otherwise
        """
        if not self.producer:
            logger.debug(f"Kafka producer not available, skipping '{topic}' event")
            return False

        try:
            await self.producer.send(topic, value=event_data, key=key)
            logger.debug(f"Published event to topic '{topic}' with key '{key}'")
            return True
        except Exception as e:
            logger.error(f"Failed to publish event to topic '{topic}': {e}")
            return False

    async def publish_post_created(self, post: Post) -> bool:
        """Publish post created event"""
        event = {
            "event_type": "post_created",
            "post_id": post.id,
            "creator_id": post.creator_id,
            "created_at": post.created_at.isoformat() if post.created_at else None,
        }
        return await self.publish_event(self.settings.KAFKA_TOPIC_POST_CREATED, post.id, event)

    async def publish_post_flagged(self, post_id: str, user_id: str, flag_count: int) -> bool:
        """Publish post flagged event"""
        event = {
            "event_type": "post_flagged",
            "post_id": post_id,
            "user_id": user_id,
            "flag_count": flag_count,
        }
        return await self.publish_event(self.settings.KAFKA_TOPIC_POST_FLAGGED, post_id, event)

    async def publish_donation_created(self, donation: Donation) -> bool:
        """Publish donation created event (virtual or token)"""
        event = {
            "event_type": "donation_created",
            "transaction_id": donation.id,
            "kind": donation.kind.value,
            "from_id": donation.from_id,
            "to_id": donation.to_id,
            "amount": format_amount(donation.amount),
            "post_id": donation.post_id,
            "created_at": donation.created_at.isoformat(),
        }
        return await self.publish_event(
            self.settings.KAFKA_TOPIC_DONATION_CREATED,
            donation.to_id,
            event
        )

    async def publish_purchase_completed(self, purchase: CoinPurchase) -> bool:
        """Publish purchase completed event"""
        event = {
            "event_type": "purchase_completed",
            "purchase_id": purchase.id,
            "user_id": purchase.user_id,
            "amount": format_amount(purchase.amount),
            "payment_amount": format_amount(purchase.payment_amount),
            "payment_currency": purchase.payment_currency.value,
            "created_at": purchase.created_at.isoformat(),
        }
        return await self.publish_event(
            self.settings.KAFKA_TOPIC_PURCHASE_COMPLETED,
            purchase.user_id,
            event
        )
