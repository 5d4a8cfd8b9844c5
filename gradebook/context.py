from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RequestContext:
    """Tenant scope and actor threaded through every engine call."""

    organization_id: int
    actor_id: Optional[int] = None
    school_id: Optional[int] = None

    @classmethod
    def from_user(cls, user):
        return cls(organization_id=user.organization_id, actor_id=user.id)
