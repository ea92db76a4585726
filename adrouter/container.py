"""Service container - wires configuration and dispatch services."""
import logging
from dataclasses import dataclass

from adrouter.config import Config
from adrouter.services.audit_service import AuditService
from adrouter.services.distribution_service import DistributionService
from adrouter.services.listing_service import ListingService
from adrouter.services.message_builder import MessageBuilder
from adrouter.services.metrics_service import MetricsService
from adrouter.services.permission_service import PermissionService
from adrouter.services.report_service import ReportService
from adrouter.services.routing_engine import RoutingEngine
from adrouter.services.target_service import TargetService
from adrouter.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Simple dependency container shared by the API and the CLI."""

    config: Config
    metrics_service: MetricsService
    audit_service: AuditService
    permission_service: PermissionService
    listing_service: ListingService
    message_builder: MessageBuilder
    routing_engine: RoutingEngine
    distribution_service: DistributionService
    target_service: TargetService
    report_service: ReportService
    rate_limiter: RateLimiter

    @classmethod
    async def create(cls, config: Config, *, persist_metrics: bool = True) -> "ServiceContainer":
        """
        Build the service container with all dependencies.

        Args:
            config: Loaded Config instance
            persist_metrics: Store counters in the database (off = memory only)

        Returns:
            ServiceContainer with initialized services
        """
        logger.info("Building service container...")

        tz_name = config.timezone_name
        metrics_service = MetricsService(persist=persist_metrics)
        audit_service = AuditService(metrics_service, tz_name=tz_name)
        permission_service = PermissionService(config.super_admin_ids, audit_service)
        listing_service = ListingService()
        message_builder = MessageBuilder(config.public_base_url, config.description_limit)
        routing_engine = RoutingEngine(listing_service, tz_name=tz_name)
        distribution_service = DistributionService(
            listing_service=listing_service,
            routing_engine=routing_engine,
            message_builder=message_builder,
            audit_service=audit_service,
            permission_service=permission_service,
            metrics_service=metrics_service,
        )
        target_service = TargetService(
            permission_service=permission_service,
            audit_service=audit_service,
            distribution_service=distribution_service,
            default_daily_quota=config.default_daily_quota,
        )
        report_service = ReportService(
            routing_engine=routing_engine,
            audit_service=audit_service,
            tz_name=tz_name,
        )
        rate_limiter = RateLimiter(enabled=config.rate_limit_enabled)

        logger.info("Service container ready")

        return cls(
            config=config,
            metrics_service=metrics_service,
            audit_service=audit_service,
            permission_service=permission_service,
            listing_service=listing_service,
            message_builder=message_builder,
            routing_engine=routing_engine,
            distribution_service=distribution_service,
            target_service=target_service,
            report_service=report_service,
            rate_limiter=rate_limiter,
        )

    async def cleanup(self):
        """Cleanup hook (kept for symmetry with startup)."""
        self.rate_limiter.reset()
        logger.info("Service container cleanup complete")
