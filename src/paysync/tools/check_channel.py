"""
Check that the configured notification channel is the one the gateway will call.

Passes only when the channel registered for IPN_URL has id PESAPAL_IPN_ID and
the channel with id PESAPAL_IPN_ID points at IPN_URL. Exit code 0 on a match,
1 otherwise.
"""
import argparse
import asyncio
import sys
from dataclasses import dataclass
from typing import List, Optional, Sequence

from structlog import get_logger

from paysync.common.config import Settings, get_settings
from paysync.common.errors import GatewayError
from paysync.common.logging import configure_logging
from paysync.gateway.client import GatewayClient, NotificationChannel

logger = get_logger()


@dataclass
class ChannelMatch:
    expected_id: Optional[str]
    expected_url: str
    by_url: Optional[NotificationChannel] = None
    by_id: Optional[NotificationChannel] = None

    @property
    def url_matches_id(self) -> bool:
        return self.by_url is not None and self.by_url.channel_id == self.expected_id

    @property
    def id_matches_url(self) -> bool:
        return self.by_id is not None and self.by_id.url == self.expected_url

    @property
    def passed(self) -> bool:
        return self.url_matches_id and self.id_matches_url


def match_channels(
    channels: Sequence[NotificationChannel], expected_id: Optional[str], expected_url: str
) -> ChannelMatch:
    match = ChannelMatch(expected_id=expected_id, expected_url=expected_url)
    match.by_url = next((c for c in channels if c.url == expected_url), None)
    if expected_id:
        match.by_id = next((c for c in channels if c.channel_id == expected_id), None)
    return match


async def check(settings: Settings, url: Optional[str] = None, gateway: Optional[GatewayClient] = None) -> int:
    expected_url = url or settings.ipn_url
    if not settings.pesapal_ipn_id:
        logger.error("channel_check_misconfigured", missing="PESAPAL_IPN_ID")
        return 1

    owned = gateway is None
    gateway = gateway or GatewayClient(settings)
    try:
        channels: List[NotificationChannel] = await gateway.list_notification_channels()
    except GatewayError as e:
        logger.error("channel_list_failed", error=str(e), status_code=e.status_code)
        return 1
    finally:
        if owned:
            await gateway.aclose()

    if not channels:
        logger.error("channel_list_empty", env=settings.pesapal_env)
        return 1

    match = match_channels(channels, settings.pesapal_ipn_id, expected_url)
    logger.info(
        "channel_lookup_by_url",
        url=expected_url,
        found_id=match.by_url.channel_id if match.by_url else None,
        matches=match.url_matches_id,
    )
    logger.info(
        "channel_lookup_by_id",
        channel_id=settings.pesapal_ipn_id,
        found_url=match.by_id.url if match.by_id else None,
        matches=match.id_matches_url,
    )

    if match.passed:
        logger.info("channel_check_passed")
        return 0

    logger.error(
        "channel_check_failed",
        available=[{"channel_id": c.channel_id, "url": c.url} for c in channels],
    )
    return 1


def run(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--url", help="IPN URL to look for (defaults to IPN_URL)")
    args = parser.parse_args(argv)

    configure_logging()
    sys.exit(asyncio.run(check(get_settings(), url=args.url)))


if __name__ == "__main__":
    run()
