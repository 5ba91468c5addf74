"""
Invite codes stored on the plan itself.

Codes are short, upper-case and alphanumeric so they can be read out
loud. A plan keeps its code until it is deleted.
"""

import secrets
import string
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from plan_ledger.config import LedgerSettings, get_settings
from plan_ledger.errors import PermissionDeniedError, ValidationError
from plan_ledger.services.invites.interface import InviteServiceInterface
from plan_ledger.services.storage import NotFoundError, PlanStorageInterface, StorageError


logger = structlog.get_logger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_GENERATION_ATTEMPTS = 10


class StoredInviteService(InviteServiceInterface):
    """Invite service backed by the plan store."""

    def __init__(
        self,
        storage: PlanStorageInterface,
        settings: Optional[LedgerSettings] = None,
    ):
        self._storage = storage
        self._settings = settings or get_settings().ledger

    def _generate_code(self) -> str:
        length = self._settings.invite_code_length
        return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))

    async def resolve_invite_code(self, code: str) -> UUID:
        normalized = (code or "").strip().upper()
        if not normalized:
            raise ValidationError(
                "Invite code is empty",
                field="code",
                suggested_fix="Enter the code you received",
            )

        plan = await self._storage.find_plan_by_invite_code(normalized)
        if plan is None:
            raise NotFoundError(f"No plan uses invite code {normalized}")
        return plan.id

    async def issue_invite_code(self, plan_id: UUID, requested_by: str) -> str:
        plan = await self._storage.get_plan(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan not found: {plan_id}")
        if plan.invite_code:
            return plan.invite_code
        if plan.owner_id != requested_by:
            raise PermissionDeniedError("Only the plan owner can create an invite code")

        for _ in range(MAX_GENERATION_ATTEMPTS):
            code = self._generate_code()
            if await self._storage.find_plan_by_invite_code(code) is None:
                break
        else:
            raise StorageError("Could not generate a unique invite code")

        plan.invite_code = code
        plan.updated_at = datetime.utcnow()
        await self._storage.save_plan(plan)

        logger.info("invite_code_issued", plan_id=str(plan_id))
        return code
