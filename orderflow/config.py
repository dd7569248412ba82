"""
Configuration loading and collaborator construction.

Configuration is a JSON file parsed into dataclasses. Secrets may be left
out of the file and supplied through environment variables
(PAYSTACK_SECRET_KEY, COURIER_GUY_API_KEY, FASTWAY_API_KEY,
NOTIFICATION_API_KEY).

Fake gateways are only used when "sandbox": true is set explicitly. With
sandbox off, missing credentials are a ConfigurationError at startup.
"""

import json
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from .gateways.courier_gateway import CourierGateway
from .gateways.courier_guy_gateway import CourierGuyGateway
from .gateways.exceptions import ConfigurationError
from .gateways.fastway_gateway import FastwayGateway
from .gateways.gateway_config import CourierType
from .gateways.notification_gateway import (
    HttpNotificationGateway,
    LoggingNotificationGateway,
    NotificationGateway
)
from .gateways.payment_gateway import PaymentGateway
from .gateways.paystack_gateway import PaystackGateway
from .gateways.sandbox import SandboxCourierGateway, SandboxPaymentGateway
from .oms.repository import InMemoryOrderRepository, OrderRepository
from .oms.sql_repository import SqlAlchemyOrderRepository
from .settlement.calculator import DEFAULT_PLATFORM_FEE_BPS


@dataclass
class ExpiryPolicy:
    """
    Deadlines applied by the expiry sweeper, in one injectable value.

    Defaults: 48h to commit with a seller reminder 24h before the deadline
    (urgent under 12h), 7 days to collect, 14 days to auto-accept delivery,
    15 minute checkout reservations, seller payouts 24h after delivery.
    """
    commit_deadline: timedelta = timedelta(hours=48)
    commit_reminder_before: timedelta = timedelta(hours=24)
    urgent_reminder_within: timedelta = timedelta(hours=12)
    collection_deadline: timedelta = timedelta(days=7)
    auto_delivery_after: timedelta = timedelta(days=14)
    auto_delivery_enabled: bool = True
    reservation_ttl: timedelta = timedelta(minutes=15)
    shipment_retry_after: timedelta = timedelta(minutes=15)
    shipment_retry_limit: int = 5
    shipment_claim_timeout: timedelta = timedelta(minutes=30)
    refund_claim_timeout: timedelta = timedelta(hours=1)
    payout_after: timedelta = timedelta(hours=24)
    batch_size: int = 100

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExpiryPolicy":
        data = data or {}
        defaults = cls()
        deadline_hours = data.get("commit_deadline_hours", defaults.commit_deadline.total_seconds() / 3600)
        # Reminder windows default to half and a quarter of the deadline
        reminder_hours = data.get("commit_reminder_before_hours", deadline_hours / 2)
        return cls(
            commit_deadline=timedelta(hours=deadline_hours),
            commit_reminder_before=timedelta(hours=reminder_hours),
            urgent_reminder_within=timedelta(
                hours=data.get("urgent_reminder_within_hours", min(deadline_hours / 4, reminder_hours))
            ),
            collection_deadline=timedelta(
                days=data.get("collection_deadline_days", defaults.collection_deadline.days)
            ),
            auto_delivery_after=timedelta(
                days=data.get("auto_delivery_after_days", defaults.auto_delivery_after.days)
            ),
            auto_delivery_enabled=data.get("auto_delivery_enabled", defaults.auto_delivery_enabled),
            reservation_ttl=timedelta(
                minutes=data.get("reservation_ttl_minutes", defaults.reservation_ttl.total_seconds() / 60)
            ),
            shipment_retry_after=timedelta(
                minutes=data.get(
                    "shipment_retry_after_minutes",
                    defaults.shipment_retry_after.total_seconds() / 60
                )
            ),
            shipment_retry_limit=data.get("shipment_retry_limit", defaults.shipment_retry_limit),
            shipment_claim_timeout=timedelta(
                minutes=data.get(
                    "shipment_claim_timeout_minutes",
                    defaults.shipment_claim_timeout.total_seconds() / 60
                )
            ),
            refund_claim_timeout=timedelta(
                minutes=data.get(
                    "refund_claim_timeout_minutes",
                    defaults.refund_claim_timeout.total_seconds() / 60
                )
            ),
            payout_after=timedelta(
                hours=data.get("payout_after_hours", defaults.payout_after.total_seconds() / 3600)
            ),
            batch_size=data.get("batch_size", defaults.batch_size)
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_dir: Optional[str] = "logs"
    format: str = "json"


@dataclass
class PaymentConfig:
    secret_key: str = ""
    currency: str = "ZAR"
    timeout_seconds: float = 20.0


@dataclass
class CourierSettings:
    name: str
    api_key: str = ""
    test_mode: bool = False
    enabled: bool = True


@dataclass
class NotificationConfig:
    endpoint: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0
    operations_email: str = ""


@dataclass
class DatabaseConfig:
    url: str = ""            # Empty: in-memory repository


@dataclass
class SettlementConfig:
    platform_fee_bps: int = DEFAULT_PLATFORM_FEE_BPS
    retain_delivery_fee_on_late_cancel: bool = True


@dataclass
class DeliveryConfig:
    quote_timeout_seconds: float = 8.0
    shipment_timeout_seconds: float = 15.0
    fallback_price: int = 9500
    fallback_days: int = 3
    fallback_service: str = "standard"
    failover: bool = True


@dataclass
class AppConfig:
    """Complete application configuration."""
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    payment: PaymentConfig = field(default_factory=PaymentConfig)
    couriers: List[CourierSettings] = field(default_factory=list)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    settlement: SettlementConfig = field(default_factory=SettlementConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    expiry: ExpiryPolicy = field(default_factory=ExpiryPolicy)
    sandbox: bool = False

    @classmethod
    def load(cls, path: str) -> "AppConfig":
        """
        Load configuration from a JSON file.

        Raises:
            FileNotFoundError: If the file does not exist
            ConfigurationError: If the file is not valid configuration
        """
        config_file = Path(path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(config_file, "r") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"Invalid JSON in {path}: {e}")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> "AppConfig":
        """
        Build and validate configuration from a dictionary.

        Args:
            data: Parsed configuration
            environ: Environment used for secrets (default: os.environ)
        """
        env = os.environ if environ is None else environ
        try:
            payment = dict(data.get("payment", {}))
            payment.setdefault("secret_key", env.get("PAYSTACK_SECRET_KEY", ""))

            couriers = []
            for item in data.get("couriers", []):
                item = dict(item)
                env_key = item["name"].upper().replace("-", "_") + "_API_KEY"
                item.setdefault("api_key", env.get(env_key, ""))
                couriers.append(CourierSettings(**item))

            notifications = dict(data.get("notifications", {}))
            notifications.setdefault("api_key", env.get("NOTIFICATION_API_KEY", ""))

            config = cls(
                logging=LoggingConfig(**data.get("logging", {})),
                payment=PaymentConfig(**payment),
                couriers=couriers,
                notifications=NotificationConfig(**notifications),
                database=DatabaseConfig(**data.get("database", {})),
                settlement=SettlementConfig(**data.get("settlement", {})),
                delivery=DeliveryConfig(**data.get("delivery", {})),
                expiry=ExpiryPolicy.from_dict(data.get("expiry")),
                sandbox=bool(data.get("sandbox", False))
            )
        except (TypeError, KeyError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

        config.validate()
        return config

    def validate(self) -> None:
        """
        Check credentials and values.

        Raises:
            ConfigurationError: On missing secrets (outside sandbox) or bad values
        """
        if not 0 <= self.settlement.platform_fee_bps <= 10_000:
            raise ConfigurationError("settlement.platform_fee_bps must be within 0..10000")

        expiry = self.expiry
        if not timedelta(0) < expiry.commit_reminder_before < expiry.commit_deadline:
            raise ConfigurationError("expiry.commit_reminder_before_hours must be within the commit deadline")
        if expiry.urgent_reminder_within > expiry.commit_reminder_before:
            raise ConfigurationError("expiry.urgent_reminder_within_hours exceeds the reminder lead time")

        for courier in self.couriers:
            try:
                CourierType(courier.name)
            except ValueError:
                raise ConfigurationError(f"Unsupported courier: {courier.name}")

        if self.sandbox:
            return

        if not self.payment.secret_key:
            raise ConfigurationError("payment.secret_key is required when sandbox is off")
        for courier in self.couriers:
            if courier.enabled and courier.name != CourierType.SANDBOX.value and not courier.api_key:
                raise ConfigurationError(f"API key missing for courier {courier.name}")
            if courier.name == CourierType.SANDBOX.value:
                raise ConfigurationError("The sandbox courier requires sandbox mode")
        if not self.notifications.endpoint:
            raise ConfigurationError("notifications.endpoint is required when sandbox is off")


# ============================================================================
# COLLABORATOR BUILDERS
# ============================================================================

def build_payment_gateway(config: AppConfig) -> PaymentGateway:
    if config.sandbox:
        return SandboxPaymentGateway(config.payment.secret_key or "sk_sandbox")
    return PaystackGateway(
        config.payment.secret_key,
        sandbox=config.payment.secret_key.startswith("sk_test_"),
        currency=config.payment.currency
    )


def build_couriers(config: AppConfig) -> List[CourierGateway]:
    couriers: List[CourierGateway] = []
    for settings in config.couriers:
        if not settings.enabled:
            continue
        courier_type = CourierType(settings.name)
        if courier_type == CourierType.COURIER_GUY and settings.api_key:
            couriers.append(CourierGuyGateway(settings.api_key, sandbox=settings.test_mode))
        elif courier_type == CourierType.FASTWAY and settings.api_key:
            couriers.append(FastwayGateway(settings.api_key, sandbox=settings.test_mode))
        elif config.sandbox:
            couriers.append(SandboxCourierGateway(courier_id=settings.name))

    if not couriers and config.sandbox:
        couriers.append(SandboxCourierGateway())
    return couriers


def build_notification_gateway(config: AppConfig) -> NotificationGateway:
    if config.sandbox and not config.notifications.endpoint:
        return LoggingNotificationGateway()
    return HttpNotificationGateway(
        config.notifications.endpoint,
        api_key=config.notifications.api_key,
        timeout_seconds=config.notifications.timeout_seconds
    )


async def build_repository(config: AppConfig) -> OrderRepository:
    if not config.database.url:
        return InMemoryOrderRepository()
    repository = SqlAlchemyOrderRepository.from_url(config.database.url)
    await repository.create_schema()
    return repository
