"""
Dependency injection utilities for API endpoints.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from services.change_notifier import ChangeNotifier
from services.relay_store import RedisRelayStore, build_relay_store
from services.session_lifecycle import SessionLifecycleManager
from services.session_resolution import SessionResolutionService
from services.submission import SubmissionService
from services.sync_runner import SyncRunner


@dataclass
class Services:
    """Everything the endpoints and background jobs share for one process."""

    relay: Optional[RedisRelayStore]
    notifier: ChangeNotifier
    resolution: SessionResolutionService
    submission: SubmissionService
    lifecycle: Optional[SessionLifecycleManager] = None
    runner: Optional[SyncRunner] = None


def build_services(
    session_factory: Optional[async_sessionmaker] = None,
    relay: Optional[RedisRelayStore] = None,
    profile: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> Services:
    profile = profile or settings.DEPLOYMENT_PROFILE
    owner_id = owner_id or settings.CLINIC_OWNER_ID
    relay = relay or build_relay_store()
    notifier = ChangeNotifier()

    if profile == "public":
        return Services(
            relay=relay,
            notifier=notifier,
            resolution=SessionResolutionService(relay=relay),
            submission=SubmissionService(relay=relay, notifier=notifier),
        )

    if session_factory is None:
        from core.database import AsyncSessionLocal
        session_factory = AsyncSessionLocal

    lifecycle = SessionLifecycleManager(session_factory, relay, owner_id=owner_id)
    return Services(
        relay=relay,
        notifier=notifier,
        lifecycle=lifecycle,
        resolution=SessionResolutionService(lifecycle=lifecycle, relay=relay),
        submission=SubmissionService(lifecycle=lifecycle, relay=relay, notifier=notifier),
        runner=SyncRunner(owner_id, session_factory, relay, lifecycle=lifecycle, notifier=notifier),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_lifecycle(services: Services = Depends(get_services)) -> SessionLifecycleManager:
    """Clinic-only endpoints need the local database."""
    if services.lifecycle is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not available on the public relay"
        )
    return services.lifecycle
