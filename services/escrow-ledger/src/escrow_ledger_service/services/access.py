"""Actors, role checks and the step-up re-authentication result variant."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from service_commons.exceptions import ServiceError

T = TypeVar("T")

ROLE_CLIENT = "CLIENT"
ROLE_STEWARD = "STEWARD"
ROLE_ADMIN = "ADMIN"
ROLE_SYSTEM = "SYSTEM"

TRUST_LEVELS: dict[str, int] = {"LOW": 0, "MEDIUM": 1, "HIGH": 2}


@dataclass(frozen=True)
class Actor:
    """An authenticated caller as reported by the identity service."""

    user_id: str
    role: str
    trust_level: str

    @property
    def is_admin(self) -> bool:
        return self.role in (ROLE_ADMIN, ROLE_SYSTEM)


# Scheduler sweeps act as this principal
SYSTEM_ACTOR = Actor(user_id="system", role=ROLE_SYSTEM, trust_level="HIGH")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome of a step-up guarded operation."""

    value: T


@dataclass(frozen=True)
class StepUpRequired:
    """
    The caller must re-authenticate at a higher trust level and retry.

    Returned before any mutation happens, so retrying the identical
    request after re-authentication is safe.
    """

    action: str
    required_level: str
    current_level: str

    def to_error(self) -> ServiceError:
        """Render as the 403 error surfaced over HTTP."""
        return ServiceError(
            "STEP_UP_REQUIRED",
            f"Action '{self.action}' requires {self.required_level} trust level",
            403,
            {
                "requires_reauth": True,
                "action": self.action,
                "required_level": self.required_level,
                "current_level": self.current_level,
            },
        )


def require_trust_level(actor: Actor, level: str, action: str) -> StepUpRequired | None:
    """Return StepUpRequired when the actor's trust level is below ``level``."""
    current = TRUST_LEVELS.get(actor.trust_level, -1)
    if current >= TRUST_LEVELS[level]:
        return None
    return StepUpRequired(
        action=action,
        required_level=level,
        current_level=actor.trust_level,
    )


def require_role(actor: Actor, *roles: str) -> None:
    """Raise FORBIDDEN unless the actor holds one of ``roles``."""
    if actor.role not in roles:
        raise ServiceError(
            "FORBIDDEN",
            f"Role {actor.role} may not perform this action",
            403,
            {"required_roles": list(roles)},
        )
