"""Invoice status state machine.

Pure logic: given the current status, the requested action and the actor's
role, decide the resulting status or raise. Persistence lives in the service
layer, which runs these checks inside the transaction that performs the write.
"""

from __future__ import annotations

from dataclasses import dataclass

from invoice_flow.errors import InsufficientPermissionsError, InvalidStatusTransitionError
from invoice_flow.models import InvoiceStatus, TransitionAction, UserRole

TERMINAL_STATUSES = frozenset(
    {InvoiceStatus.APPROVED, InvoiceStatus.REJECTED, InvoiceStatus.DELETED}
)
EDITABLE_STATUSES = frozenset({InvoiceStatus.PROCESSING, InvoiceStatus.NEEDS_REVIEW})
ANY_ROLE = frozenset(UserRole)


@dataclass(frozen=True)
class TransitionRule:
    """Where an action may start, who may perform it, and where it leads.

    ``target`` is None for actions that leave the status unchanged.
    """

    sources: frozenset[InvoiceStatus]
    roles: frozenset[UserRole]
    target: InvoiceStatus | None = None


RULES: dict[TransitionAction, TransitionRule] = {
    TransitionAction.SUBMIT_FOR_APPROVAL: TransitionRule(
        sources=frozenset({InvoiceStatus.NEEDS_REVIEW}),
        roles=frozenset({UserRole.FINANCE_CLERK, UserRole.ADMIN}),
        target=InvoiceStatus.AWAITING_APPROVAL,
    ),
    TransitionAction.APPROVE: TransitionRule(
        sources=frozenset({InvoiceStatus.AWAITING_APPROVAL}),
        roles=frozenset({UserRole.FINANCE_MANAGER, UserRole.ADMIN}),
        target=InvoiceStatus.APPROVED,
    ),
    TransitionAction.REJECT: TransitionRule(
        sources=frozenset({InvoiceStatus.AWAITING_APPROVAL}),
        roles=frozenset({UserRole.FINANCE_MANAGER, UserRole.ADMIN}),
        target=InvoiceStatus.REJECTED,
    ),
    TransitionAction.ASSIGN: TransitionRule(
        sources=frozenset(InvoiceStatus) - TERMINAL_STATUSES,
        roles=ANY_ROLE,
    ),
    TransitionAction.UPDATE: TransitionRule(
        sources=EDITABLE_STATUSES,
        roles=frozenset({UserRole.FINANCE_CLERK, UserRole.ADMIN}),
    ),
    TransitionAction.DELETE: TransitionRule(
        sources=frozenset(InvoiceStatus) - {InvoiceStatus.DELETED},
        roles=frozenset({UserRole.ADMIN}),
        target=InvoiceStatus.DELETED,
    ),
}


def plan_transition(
    status: InvoiceStatus, action: TransitionAction, role: UserRole
) -> InvoiceStatus:
    """Return the status after applying ``action``.

    Raises InvalidStatusTransitionError when the action is not legal from
    ``status`` and InsufficientPermissionsError when ``role`` may not perform
    it. The status check comes first.
    """
    action = TransitionAction(action)
    status = InvoiceStatus(status)
    role = UserRole(role)
    rule = RULES[action]
    verb = action.value.replace("_", " ")

    if status not in rule.sources:
        msg = f"Cannot {verb} an invoice in status {status.value}"
        raise InvalidStatusTransitionError(msg)

    if role not in rule.roles:
        msg = f"Role {role.value} may not {verb} invoices"
        raise InsufficientPermissionsError(msg)

    return rule.target if rule.target is not None else status


def allowed_actions(status: InvoiceStatus, role: UserRole) -> list[TransitionAction]:
    """Actions ``role`` may currently perform on an invoice in ``status``."""
    return [
        action
        for action, rule in RULES.items()
        if status in rule.sources and role in rule.roles
    ]
