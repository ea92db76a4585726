"""Services package - dispatch business logic layer."""
from adrouter.services.audit_service import AuditService
from adrouter.services.distribution_service import DistributionService
from adrouter.services.listing_service import ListingService
from adrouter.services.message_builder import MessageBuilder
from adrouter.services.metrics_service import MetricsService
from adrouter.services.permission_service import PermissionService
from adrouter.services.report_service import ReportService
from adrouter.services.routing_engine import RoutingEngine
from adrouter.services.target_service import TargetService

__all__ = [
    "AuditService",
    "DistributionService",
    "ListingService",
    "MessageBuilder",
    "MetricsService",
    "PermissionService",
    "ReportService",
    "RoutingEngine",
    "TargetService",
]
