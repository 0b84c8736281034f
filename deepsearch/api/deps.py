from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from fastapi import Header

from deepsearch.agents.orchestrator import TurnOrchestrator
from deepsearch.services import store as store_service
from deepsearch.services.errors import UnauthorizedError
from deepsearch.services.quota import QuotaGate
from deepsearch.services.store import ChatStore

USER_ID_HEADER = "X-User-Id"

OrchestratorFactory = Callable[..., TurnOrchestrator]


@dataclass
class User:
    id: str


async def get_current_user(x_user_id: str | None = Header(default=None)) -> User:
    """Identity is asserted by the upstream auth proxy."""
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedError("Missing X-User-Id header")
    return User(id=x_user_id.strip())


def get_store() -> ChatStore:
    return store_service.get_store()


def get_quota_gate() -> QuotaGate:
    return QuotaGate(store_service.get_store())


def _build_orchestrator(**kwargs: Any) -> TurnOrchestrator:
    return TurnOrchestrator(**kwargs)


def get_orchestrator_factory() -> OrchestratorFactory:
    return _build_orchestrator
