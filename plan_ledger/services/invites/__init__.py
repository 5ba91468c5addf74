"""Plan invitation services package."""

from plan_ledger.services.invites.interface import InviteServiceInterface
from plan_ledger.services.invites.stored import StoredInviteService

__all__ = ["InviteServiceInterface", "StoredInviteService"]
