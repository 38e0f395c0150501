from typing import List

from agency_portal.models import Project, Role, User

# Staff who may prepare contracts and request signatures
OPERATOR_ROLES: List[Role] = [Role.ADMIN, Role.MANAGER, Role.CONSULTANT]

# Staff who may countersign on behalf of the agency
COUNTERSIGN_ROLES: List[Role] = [Role.ADMIN, Role.MANAGER]


def is_operator(user: User) -> bool:
    return user.role in OPERATOR_ROLES


def can_countersign(user: User) -> bool:
    return user.role in COUNTERSIGN_ROLES


def can_view_project_contract(user: User, project: Project) -> bool:
    """Operators see every contract; client users only their own projects'."""
    if is_operator(user):
        return True
    return user.role == Role.CLIENT and user.client_id is not None and user.client_id == project.client_id
