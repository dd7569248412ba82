"""
Main entry point for the Orderflow expiry sweeper.

Loads configuration, wires the collaborators and runs one sweep pass.
An external scheduler (cron, a task queue beat) triggers it periodically.
"""

import asyncio
import argparse
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from .config import (
    AppConfig,
    build_couriers,
    build_notification_gateway,
    build_payment_gateway,
    build_repository
)
from .delivery.orchestrator import DeliveryOrchestrator, FallbackQuote
from .gateways.notification_gateway import NotificationDispatcher, NotificationGateway
from .gateways.payment_gateway import PaymentGateway
from .oms.checkout import CheckoutCoordinator
from .oms.commit_coordinator import CommitCoordinator
from .oms.expiry_sweeper import ExpirySweeper, SweepReport
from .oms.fulfillment import FulfillmentCoordinator
from .oms.payout_coordinator import PayoutCoordinator
from .oms.refund_coordinator import RefundCoordinator
from .oms.repository import OrderRepository
from .oms.state_machine import OrderStateMachine
from .oms.webhooks import WebhookHandler
from .utils.logger import close_log_file, setup_logger, log_system_event, EventType


@dataclass
class Services:
    """Wired application components."""
    config: AppConfig
    repository: OrderRepository
    payment_gateway: PaymentGateway
    notification_gateway: NotificationGateway
    notifier: NotificationDispatcher
    delivery: DeliveryOrchestrator
    state_machine: OrderStateMachine
    refunds: RefundCoordinator
    payouts: PayoutCoordinator
    commits: CommitCoordinator
    checkout: CheckoutCoordinator
    fulfillment: FulfillmentCoordinator
    webhooks: WebhookHandler
    sweeper: ExpirySweeper

    async def close(self) -> None:
        """Flush notifications, release connections and close the log file."""
        await self.notifier.drain()
        await self.delivery.close()
        await self.payment_gateway.close()
        await self.notification_gateway.close()
        await self.repository.close()
        close_log_file()


async def build_services(config: AppConfig) -> Services:
    """
    Construct every component from configuration.

    Args:
        config: Validated application configuration

    Returns:
        Services container
    """
    repository = await build_repository(config)
    payment_gateway = build_payment_gateway(config)
    notification_gateway = build_notification_gateway(config)
    notifier = NotificationDispatcher(notification_gateway, config.notifications.timeout_seconds)

    delivery = DeliveryOrchestrator(
        build_couriers(config),
        quote_timeout_seconds=config.delivery.quote_timeout_seconds,
        shipment_timeout_seconds=config.delivery.shipment_timeout_seconds,
        fallback=FallbackQuote(
            price=config.delivery.fallback_price,
            estimated_days=config.delivery.fallback_days,
            service_code=config.delivery.fallback_service
        ),
        failover=config.delivery.failover
    )
    state_machine = OrderStateMachine(repository, notifier=notifier)
    refunds = RefundCoordinator(
        repository,
        payment_gateway,
        notifier=notifier,
        timeout_seconds=config.payment.timeout_seconds
    )
    payouts = PayoutCoordinator(
        repository,
        payment_gateway,
        notifier=notifier,
        platform_fee_bps=config.settlement.platform_fee_bps,
        timeout_seconds=config.payment.timeout_seconds
    )
    commits = CommitCoordinator(
        repository,
        state_machine,
        delivery,
        refunds,
        shipment_retry_limit=config.expiry.shipment_retry_limit
    )
    checkout = CheckoutCoordinator(
        repository,
        payment_gateway,
        policy=config.expiry,
        platform_fee_bps=config.settlement.platform_fee_bps,
        notifier=notifier,
        timeout_seconds=config.payment.timeout_seconds
    )
    fulfillment = FulfillmentCoordinator(
        repository,
        state_machine,
        refunds,
        retain_delivery_fee_on_late_cancel=config.settlement.retain_delivery_fee_on_late_cancel
    )

    return Services(
        config=config,
        repository=repository,
        payment_gateway=payment_gateway,
        notification_gateway=notification_gateway,
        notifier=notifier,
        delivery=delivery,
        state_machine=state_machine,
        refunds=refunds,
        payouts=payouts,
        commits=commits,
        checkout=checkout,
        fulfillment=fulfillment,
        webhooks=WebhookHandler(repository, payment_gateway, checkout, refunds, payouts=payouts),
        sweeper=ExpirySweeper(
            repository,
            state_machine,
            commits,
            refunds,
            policy=config.expiry,
            notifier=notifier,
            operations_email=config.notifications.operations_email,
            payouts=payouts
        )
    )


async def run_sweep(config: AppConfig, now: Optional[datetime] = None) -> SweepReport:
    """
    Run one expiry sweep pass with freshly built services.

    Args:
        config: Application configuration
        now: Reference time (default: current UTC time)
    """
    logger = setup_logger(
        log_level=config.logging.level,
        log_dir=config.logging.log_dir,
        log_format=config.logging.format,
        service_name="orderflow-sweeper"
    )
    log_system_event(
        logger,
        EventType.STARTUP,
        "Expiry sweeper starting",
        sandbox=config.sandbox,
        database="sql" if config.database.url else "memory"
    )

    services = await build_services(config)
    try:
        return await services.sweeper.sweep(now)
    except Exception as e:
        logger.error("critical_error", error=str(e), error_type=type(e).__name__)
        raise
    finally:
        log_system_event(logger, EventType.SHUTDOWN, "Expiry sweeper finished")
        await services.close()


def _parse_now(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point. Returns 1 when any sweep item failed."""
    parser = argparse.ArgumentParser(
        description="Orderflow expiry sweeper (one pass)"
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config/config.json",
        help="Path to configuration file"
    )
    parser.add_argument(
        "--now",
        type=_parse_now,
        default=None,
        help="Reference time as ISO-8601 (default: current UTC time)"
    )
    args = parser.parse_args(argv)

    config = AppConfig.load(args.config)
    report = asyncio.run(run_sweep(config, args.now))
    return 1 if report.errors else 0


if __name__ == "__main__":
    raise SystemExit(main())
