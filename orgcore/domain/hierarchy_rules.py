from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum

from orgcore.domain.models import CodeType, Role

MAX_DEPTH = 5
TOP_LEVEL = 1


class AssignmentReach(StrEnum):
    DIRECT = "direct"
    TRANSITIVE = "transitive"


ALLOWED_PARENTS: Mapping[Role, frozenset[Role]] = {
    Role.TOP_ADMIN: frozenset(),
    Role.DELEGATE_ADMIN: frozenset({Role.TOP_ADMIN, Role.DELEGATE_ADMIN}),
    Role.SENIOR_FULFILLER: frozenset({Role.TOP_ADMIN, Role.DELEGATE_ADMIN}),
    Role.FULFILLER: frozenset({Role.SENIOR_FULFILLER}),
    Role.CLIENT: frozenset({Role.TOP_ADMIN, Role.DELEGATE_ADMIN}),
}

CODE_TYPE_ROLE: Mapping[CodeType, Role] = {
    CodeType.DELEGATE: Role.DELEGATE_ADMIN,
    CodeType.SENIOR_FULFILLER: Role.SENIOR_FULFILLER,
    CodeType.FULFILLER: Role.FULFILLER,
    CodeType.CLIENT: Role.CLIENT,
}

# XX-XXX-XXXXXX: owner role prefix, code type segment, random suffix
ROLE_CODE_PREFIX: Mapping[Role, str] = {
    Role.TOP_ADMIN: "TA",
    Role.DELEGATE_ADMIN: "DA",
    Role.SENIOR_FULFILLER: "SF",
    Role.FULFILLER: "FF",
    Role.CLIENT: "CL",
}

CODE_TYPE_SEGMENT: Mapping[CodeType, str] = {
    CodeType.DELEGATE: "DLG",
    CodeType.SENIOR_FULFILLER: "SFL",
    CodeType.FULFILLER: "FUL",
    CodeType.CLIENT: "CLI",
}

ASSIGNMENT_RULES: Mapping[Role, Mapping[Role, AssignmentReach]] = {
    Role.TOP_ADMIN: {
        Role.DELEGATE_ADMIN: AssignmentReach.TRANSITIVE,
        Role.SENIOR_FULFILLER: AssignmentReach.TRANSITIVE,
        Role.FULFILLER: AssignmentReach.TRANSITIVE,
    },
    Role.DELEGATE_ADMIN: {
        Role.DELEGATE_ADMIN: AssignmentReach.DIRECT,
        Role.SENIOR_FULFILLER: AssignmentReach.DIRECT,
    },
    Role.SENIOR_FULFILLER: {
        Role.FULFILLER: AssignmentReach.DIRECT,
    },
    Role.FULFILLER: {},
    Role.CLIENT: {},
}


def max_depth() -> int:
    return MAX_DEPTH


def allowed_parents(role: Role) -> frozenset[Role]:
    return ALLOWED_PARENTS[role]


def is_valid_parent(child_role: Role, parent_role: Role) -> bool:
    return parent_role in ALLOWED_PARENTS[child_role]


def recruited_role(code_type: CodeType) -> Role:
    return CODE_TYPE_ROLE[code_type]


def recruitable_code_types(owner_role: Role) -> list[CodeType]:
    return [code_type for code_type, role in CODE_TYPE_ROLE.items() if owner_role in ALLOWED_PARENTS[role]]


def assignment_reach(assigner_role: Role, assignee_role: Role) -> AssignmentReach | None:
    return ASSIGNMENT_RULES[assigner_role].get(assignee_role)


def assignable_roles(assigner_role: Role) -> frozenset[Role]:
    return frozenset(ASSIGNMENT_RULES[assigner_role])
