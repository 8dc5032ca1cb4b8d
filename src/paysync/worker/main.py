import asyncio
import signal

from structlog import get_logger
from temporalio.worker import Worker

from paysync.common.config import get_settings
from paysync.common.logging import configure_logging
from paysync.common.temporal import get_temporal_client
from paysync.workflows.notifications import PaymentNotificationWorkflow
from paysync.activities.notifications import send_payment_email

logger = get_logger()


async def main():
    configure_logging()
    settings = get_settings()
    logger.info("worker_startup", version="0.1.0")

    client = await get_temporal_client(settings)

    interrupt_event = asyncio.Event()

    def signal_handler(sig, frame):
        logger.info("signal_received", signal=sig)
        interrupt_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    # Payment emails only; reconciliation itself runs in the API process
    notification_worker = Worker(
        client,
        task_queue=settings.notifications_task_queue,
        workflows=[PaymentNotificationWorkflow],
        activities=[send_payment_email],
    )

    logger.info("workers_initialized", queues=[settings.notifications_task_queue])

    async with notification_worker:
        logger.info("workers_started")
        await interrupt_event.wait()
        logger.info("shutdown_signal_received_draining")

    logger.info("shutdown_complete")


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
