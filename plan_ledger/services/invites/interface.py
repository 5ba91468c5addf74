"""
Plan Invitation Service Interface

Invite codes are how a signed-in user finds a plan to join. Redeeming
a code only resolves the plan; joining it is the registry's job.
"""

from abc import ABC, abstractmethod
from uuid import UUID


class InviteServiceInterface(ABC):
    """Issue and resolve plan invite codes."""

    @abstractmethod
    async def resolve_invite_code(self, code: str) -> UUID:
        """
        Look up the plan behind an invite code.

        Raises:
            NotFoundError: If no plan carries the code
        """
        pass

    @abstractmethod
    async def issue_invite_code(self, plan_id: UUID, requested_by: str) -> str:
        """
        Return the plan's invite code, creating one if needed.

        Raises:
            NotFoundError: If the plan doesn't exist
            PermissionDeniedError: If the requester doesn't own the plan
        """
        pass
