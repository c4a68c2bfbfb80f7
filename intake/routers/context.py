"""Per-request service wiring shared by the API routers."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, Request, status
from slowapi import Limiter

from ..core.clock import Clock, system_clock
from ..core.errors import (
    AssignmentConflict,
    InvalidTransitionError,
    OperatorUnavailableError,
)
from ..services import Collaborators, Services, build_services

logger = logging.getLogger(__name__)

INBOUND_RATE_LIMIT = os.getenv("INBOUND_RATE_LIMIT", "300/minute")


def get_client_ip(request: Request) -> str:
    """Extract a best-effort client IP for rate limiting.

    Prefer ``X-Forwarded-For`` (first hop) if present, otherwise use the
    socket peer address.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=get_client_ip)


def request_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", system_clock)


@contextmanager
def service_context(request: Request) -> Iterator[Services]:
    """Open a session, wire the services and translate domain errors."""

    state = request.app.state
    session = state.session_factory()
    collaborators: Collaborators = state.collaborators
    services = build_services(
        session,
        state.settings,
        collaborators,
        clock=request_clock(request),
    )
    try:
        yield services
        session.commit()
    except LookupError as exc:
        session.rollback()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (OperatorUnavailableError, AssignmentConflict, InvalidTransitionError) as exc:
        session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except HTTPException:
        session.rollback()
        raise
    except Exception as exc:
        session.rollback()
        logger.exception("Request failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    finally:
        session.close()


__all__ = ["INBOUND_RATE_LIMIT", "get_client_ip", "limiter", "request_clock", "service_context"]
