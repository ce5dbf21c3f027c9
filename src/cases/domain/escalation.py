"""
Escalation Target Selection
===========================

Pure decision rule choosing who receives an overdue case. Directory
lookups happen in the application layer; this module only decides.
"""

from typing import Iterable, Optional, Sequence

from config import ESCALATION_ROLES
from cases.domain.entities import Case, User


def select_escalation_target(
    case: Case,
    assignee: Optional[User],
    supervisor: Optional[User],
    candidates: Iterable[User],
    escalation_roles: Optional[Sequence[str]] = None
) -> Optional[User]:
    """
    Pick the escalation target for an overdue case.

    Rules, in order:
    1. The assignee's supervisor, when the case has an assignee and the
       supervisor exists and is active.
    2. The least-loaded active candidate whose role is eligible, never the
       case's current assignee. Ties go to the smallest id.
    3. None; the case stays unescalated until a later pass.
    """
    if assignee is not None and supervisor is not None and supervisor.is_active:
        return supervisor

    roles = set(escalation_roles if escalation_roles is not None else ESCALATION_ROLES)
    eligible = [
        user for user in candidates
        if user.is_active
        and user.role in roles
        and user.id is not None
        and user.id != case.assigned_to
    ]
    if not eligible:
        return None

    return min(eligible, key=lambda user: (user.performance.current_case_load, str(user.id)))
