from typing import Optional

from temporalio.client import Client
from structlog import get_logger

from paysync.common.config import Settings, get_settings

logger = get_logger()

async def get_temporal_client(settings: Optional[Settings] = None) -> Client:
    """
    Connect to the Temporal server that runs notification delivery.
    """
    settings = settings or get_settings()
    target_host = settings.temporal_address
    logger.info("connecting_to_temporal", address=target_host)

    # In production, you would configure TLS here
    client = await Client.connect(target_host)

    logger.info("connected_to_temporal", address=target_host)
    return client
