"""
Scheduler state management for API integration.

Provides singleton access to the SchedulerService and the window
coordinator. Initialized during FastAPI lifespan; the tick loop starts only
when SCHEDULER_ENABLED is true or on POST /scheduler/start.

Usage:
    # In lifespan:
    init_scheduler_service(settings)

    # In routers:
    service = get_scheduler_service()
"""

from typing import Optional

from ..config import SchedulerSettings
from ..scheduler.service import SchedulerService
from ..settlement.collaborators import Collaborators
from ..settlement.handlers import build_coordinator, build_scheduler_service
from ..settlement.windows import BatchWindowCoordinator


# Global instances
_scheduler_service: Optional[SchedulerService] = None
_coordinator: Optional[BatchWindowCoordinator] = None


def init_scheduler_service(
    settings: SchedulerSettings,
    collaborators: Optional[Collaborators] = None,
    service: Optional[SchedulerService] = None,
) -> SchedulerService:
    """
    Initialize the scheduler service singleton.

    Args:
        settings: Runtime configuration
        collaborators: External services
        service: Pre-built service to install instead (tests)

    Returns:
        Initialized SchedulerService

    Raises:
        ConfigurationError: If no collaborators are wired and the in-memory
            set is not enabled
    """
    global _scheduler_service, _coordinator

    if _scheduler_service is not None:
        return _scheduler_service

    _coordinator = build_coordinator(settings)
    _scheduler_service = service or build_scheduler_service(settings, collaborators)

    return _scheduler_service


def get_scheduler_service() -> SchedulerService:
    """
    Get the scheduler service singleton.

    Raises:
        RuntimeError: If scheduler service not initialized
    """
    if _scheduler_service is None:
        raise RuntimeError(
            "Scheduler service not initialized. "
            "Ensure init_scheduler_service() is called during startup."
        )

    return _scheduler_service


def get_window_coordinator() -> BatchWindowCoordinator:
    if _coordinator is None:
        raise RuntimeError("Window coordinator not initialized")
    return _coordinator


def shutdown_scheduler_service() -> None:
    """
    Shutdown the scheduler service.

    Called during FastAPI lifespan shutdown.
    """
    global _scheduler_service, _coordinator

    if _scheduler_service is not None:
        _scheduler_service.close()
        _scheduler_service = None

    _coordinator = None
