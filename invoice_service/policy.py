"""
Access rules for invoices: admins see everything, users see what they issued.
"""

from dataclasses import dataclass

from . import models, schemas
from .errors import ForbiddenError


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as supplied by the auth collaborator."""
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == schemas.UserRole.ADMIN.value


def can_view(principal: Principal, invoice: models.Invoice) -> bool:
    return principal.is_admin or invoice.user_id == principal.user_id


can_update = can_view
can_delete = can_view
can_update_status = can_view


def can_create(principal: Principal) -> bool:
    return principal.role in {role.value for role in schemas.UserRole}


_CHECKS = {
    "view": can_view,
    "update": can_update,
    "delete": can_delete,
    "update_status": can_update_status,
}


def authorize(principal: Principal, action: str, invoice: models.Invoice) -> None:
    """Raise ForbiddenError unless ``principal`` may perform ``action``"""
    if not _CHECKS[action](principal, invoice):
        raise ForbiddenError(
            f"You are not allowed to {action.replace('_', ' ')} invoice {invoice.id}",
            {"invoice_id": invoice.id, "action": action},
        )


def authorize_create(principal: Principal) -> None:
    if not can_create(principal):
        raise ForbiddenError("You are not allowed to create invoices", {"action": "create"})


def authorize_admin(principal: Principal, action: str) -> None:
    if not principal.is_admin:
        raise ForbiddenError(f"Only administrators may {action}", {"action": action})


def scope_filters(principal: Principal, filters: schemas.InvoiceFilters) -> schemas.InvoiceFilters:
    """Restrict a listing to the caller's own invoices unless they are an admin"""
    if principal.is_admin:
        return filters
    return filters.model_copy(update={"user_id": principal.user_id})
