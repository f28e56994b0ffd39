"""Clinic maintenance commands: one-off relay drain and link issuing."""

import argparse
import asyncio
import sys
from typing import Optional, Sequence

from dotenv import load_dotenv

load_dotenv()

from core.config import settings
from core.database import AsyncSessionLocal, create_tables
from core.exceptions import RelayUnreachable, SurveyRelayError
from core.logging import get_logger, setup_logging
from core.redis import close_redis
from schemas.survey import RespondentRef
from services.relay_store import build_relay_store
from services.session_lifecycle import SessionLifecycleManager
from services.sync_coordinator import SyncCoordinator
from services.token_codec import build_link

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="survey-relay",
        description="Clinic-side survey relay maintenance.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("drain", help="Pull every pending relayed response into the local database once")

    create = subparsers.add_parser("create-session", help="Issue a survey link and print it")
    create.add_argument("template_id")
    create.add_argument("name", help="Respondent name")
    create.add_argument("--patient-id", default=None)
    create.add_argument("--ttl-hours", type=float, default=None)
    create.add_argument("--local-only", action="store_true", help="Do not mirror the session to the relay")
    return parser


async def drain() -> int:
    relay = build_relay_store()
    coordinator = SyncCoordinator(settings.CLINIC_OWNER_ID, AsyncSessionLocal, relay)
    try:
        ingested = await coordinator.drain_once()
    finally:
        await close_redis()
    stats = coordinator.stats
    print(f"ingested={ingested} duplicates={stats.duplicates} failed={stats.failed}")
    return 1 if stats.failed else 0


async def create_session(
    template_id: str,
    name: str,
    patient_id: Optional[str] = None,
    ttl_hours: Optional[float] = None,
    local_only: bool = False,
) -> int:
    lifecycle = SessionLifecycleManager(AsyncSessionLocal, build_relay_store())
    try:
        issued = await lifecycle.create_session(
            template_id,
            RespondentRef(patient_id=patient_id, name=name),
            ttl_hours=ttl_hours,
            created_by="cli",
            remote=not local_only,
        )
    finally:
        await close_redis()
    print(build_link(issued.session.token, settings.PUBLIC_BASE_URL))
    if not issued.relay_mirrored:
        print("warning: link works on this clinic's network only", file=sys.stderr)
    return 0


async def run(args: argparse.Namespace) -> int:
    if settings.ENV == "development":
        await create_tables()
    if args.command == "drain":
        return await drain()
    return await create_session(
        args.template_id,
        args.name,
        patient_id=args.patient_id,
        ttl_hours=args.ttl_hours,
        local_only=args.local_only,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    if not settings.is_clinic:
        print("These commands need the clinic profile (DEPLOYMENT_PROFILE=clinic)", file=sys.stderr)
        return 2
    try:
        return asyncio.run(run(args))
    except RelayUnreachable as e:
        logger.error("Relay unreachable", error=str(e))
        print(f"error: relay unreachable: {e}", file=sys.stderr)
        return 1
    except SurveyRelayError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
