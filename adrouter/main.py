"""Command line entry point - serve the API and run maintenance tasks."""
import argparse
import asyncio
import logging
import os
import sys
from typing import Optional, Sequence

from adrouter.config import Config
from adrouter.container import ServiceContainer
from adrouter.services.audit_service import AuditAction, EntityType
from database.db import db

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
SYSTEM_ACTOR = "system"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure root logging once for the process (stdout + optional file)."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


async def init_db() -> None:
    """Create tables directly (development shortcut; production runs Alembic)."""
    await db.connect()
    try:
        await db.create_tables()
        counts = await db.get_table_counts()
        logger.info(f"Tables ready: {counts}")
    finally:
        await db.disconnect()


async def purge_audit(config: Config, days: Optional[int] = None) -> int:
    days = days or config.audit_retention_days
    await db.connect()
    try:
        container = await ServiceContainer.create(config)
        deleted = await container.audit_service.purge_older_than(days)
        await container.audit_service.log(
            AuditAction.PURGE_AUDIT,
            SYSTEM_ACTOR,
            EntityType.OPERATOR,
            SYSTEM_ACTOR,
            {"days": days, "deleted": deleted},
        )
        await container.cleanup()
        return deleted
    finally:
        await db.disconnect()


def serve(host: str, port: int) -> None:
    import uvicorn

    logger.info(f"Starting dispatch API on {host}:{port}")
    uvicorn.run("api_server:app", host=host, port=port, log_config=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="adrouter", description="Listing dispatch routing service")
    sub = parser.add_subparsers(dest="command", required=True)

    serve_parser = sub.add_parser("serve", help="run the operator HTTP API")
    serve_parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    serve_parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))

    sub.add_parser("init-db", help="create database tables")

    purge_parser = sub.add_parser("purge-audit", help="delete old audit entries")
    purge_parser.add_argument("--days", type=int, default=None, help="retention in days (default AUDIT_RETENTION_DAYS)")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = Config.from_env()
    configure_logging(config.log_level, config.log_file)

    if args.command == "serve":
        serve(args.host, args.port)
    elif args.command == "init-db":
        asyncio.run(init_db())
    elif args.command == "purge-audit":
        deleted = asyncio.run(purge_audit(config, args.days))
        print(f"Deleted {deleted} audit entries")
    return 0


if __name__ == "__main__":
    sys.exit(main())
