"""
Wealth CRM NATS Client Service
JetStream publishing for deal workflow and booking events
"""

import json
import uuid
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import nats
from nats.js import JetStreamContext
from nats.js.api import StreamConfig
from nats.js.errors import NotFoundError as StreamNotFoundError
import structlog

logger = structlog.get_logger()


STREAMS = [
    {
        "name": "CRM_DEALS",
        "subjects": [
            "deals.created",
            "deals.kyc_requested",
            "deals.kyc_status_changed",
            "deals.documents_archived",
            "deals.progressed",
            "deals.stage_overridden",
            "deals.rejected",
        ],
        "description": "Deal workflow events"
    },
    {
        "name": "CRM_BOOKINGS",
        "subjects": ["bookings.created", "bookings.status_changed", "bookings.completed"],
        "description": "Booking lifecycle events"
    },
]


class NATSClient:
    """NATS JetStream client for event streaming"""

    def __init__(self, nats_url: str):
        self.nats_url = nats_url
        self.nc: Optional[nats.NATS] = None
        self.js: Optional[JetStreamContext] = None
        self.streams_initialized = False

    async def connect(self):
        """Connect to NATS server"""
        try:
            self.nc = await nats.connect(self.nats_url)
            self.js = self.nc.jetstream()
            logger.info("Connected to NATS", url=self.nats_url)

            await self.initialize_streams()

        except Exception as e:
            logger.error("Failed to connect to NATS", error=str(e), url=self.nats_url)
            raise

    async def disconnect(self):
        """Disconnect from NATS server"""
        if self.nc:
            await self.nc.close()
            logger.info("Disconnected from NATS")

    async def initialize_streams(self):
        """Create the CRM streams if they do not exist yet"""
        if self.streams_initialized:
            return

        for stream_config in STREAMS:
            try:
                try:
                    await self.js.stream_info(stream_config["name"])
                    logger.debug("Stream already exists", stream=stream_config["name"])
                except StreamNotFoundError:
                    config = StreamConfig(
                        name=stream_config["name"],
                        subjects=stream_config["subjects"],
                        description=stream_config["description"],
                        max_age=30 * 24 * 60 * 60,  # 30 days retention
                        storage="file"
                    )
                    await self.js.add_stream(config)
                    logger.info("Created stream", stream=stream_config["name"], subjects=stream_config["subjects"])

            except Exception as e:
                logger.error("Failed to initialize stream", stream=stream_config["name"], error=str(e))

        self.streams_initialized = True

    async def publish_event(self, subject: str, data: Dict[str, Any]):
        """
        Publish a CRM event envelope to JetStream.

        Every event gets a fresh id sent as ``Nats-Msg-Id`` so JetStream can
        drop duplicates if a publish is retried.
        """
        event_id = uuid.uuid4().hex
        envelope = {
            "id": event_id,
            "type": subject,
            "source": "wealth-crm",
            "occurred_at": datetime.now(timezone.utc).isoformat(),
            "data": data
        }

        try:
            ack = await self.js.publish(
                subject=subject,
                payload=json.dumps(envelope, default=str).encode(),
                headers={"Nats-Msg-Id": event_id}
            )

            logger.info("Event published", subject=subject, event_id=event_id, stream=ack.stream, sequence=ack.seq)
            return ack

        except Exception as e:
            logger.error("Failed to publish event", subject=subject, error=str(e))
            raise

    async def health_check(self) -> bool:
        """Check NATS connection health"""
        try:
            if not self.nc or not self.nc.is_connected:
                return False

            await self.nc.flush(timeout=2)
            return True

        except Exception as e:
            logger.warning("NATS health check failed", error=str(e))
            return False


# Global NATS client instance
nats_client: Optional[NATSClient] = None


async def get_nats_client() -> NATSClient:
    """Get the global NATS client instance"""
    if nats_client is None:
        raise RuntimeError("NATS client not initialized")
    return nats_client


async def initialize_nats(nats_url: str):
    """Initialize the global NATS client"""
    global nats_client
    nats_client = NATSClient(nats_url)
    await nats_client.connect()


async def close_nats():
    """Close the global NATS client"""
    global nats_client
    if nats_client:
        await nats_client.disconnect()
        nats_client = None


async def publish_event_safely(subject: str, data: Dict[str, Any]) -> bool:
    """Best-effort publish; failures are logged and never raised"""
    if nats_client is None:
        logger.debug("Event skipped, NATS not connected", subject=subject)
        return False

    try:
        await nats_client.publish_event(subject, data)
        return True
    except Exception as e:
        logger.warning("Event not published", subject=subject, error=str(e))
        return False
