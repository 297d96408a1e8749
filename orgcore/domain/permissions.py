from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from orgcore.domain.models import Role

CAP_VIEW_ALL_PROJECTS = "view_all_projects"
CAP_VIEW_OWN_PROJECTS = "view_own_projects"
CAP_VIEW_ASSIGNED_PROJECTS = "view_assigned_projects"
CAP_CREATE_PROJECTS = "create_projects"
CAP_ASSIGN_PROJECTS = "assign_projects"
CAP_VIEW_PROJECT_ASSIGNMENTS = "view_project_assignments"
CAP_MANAGE_USERS = "manage_users"
CAP_VIEW_USER_DETAILS = "view_user_details"
CAP_VIEW_FINANCIAL_DATA = "view_financial_data"
CAP_VIEW_FINANCIAL_AUDIT = "view_financial_audit"
CAP_VIEW_REFERENCE_CODES = "view_reference_codes"
CAP_GENERATE_REFERENCE_CODES = "generate_reference_codes"
CAP_MANAGE_REFERENCE_CODES = "manage_reference_codes"
CAP_VIEW_HIERARCHY = "view_hierarchy"
CAP_MANAGE_HIERARCHY = "manage_hierarchy"
CAP_REASSIGN_USERS = "reassign_users"
CAP_VIEW_ANALYTICS = "view_analytics"
CAP_SYSTEM_ADMIN = "system_admin"

ALL_CAPABILITIES = frozenset(
    {
        CAP_VIEW_ALL_PROJECTS,
        CAP_VIEW_OWN_PROJECTS,
        CAP_VIEW_ASSIGNED_PROJECTS,
        CAP_CREATE_PROJECTS,
        CAP_ASSIGN_PROJECTS,
        CAP_VIEW_PROJECT_ASSIGNMENTS,
        CAP_MANAGE_USERS,
        CAP_VIEW_USER_DETAILS,
        CAP_VIEW_FINANCIAL_DATA,
        CAP_VIEW_FINANCIAL_AUDIT,
        CAP_VIEW_REFERENCE_CODES,
        CAP_GENERATE_REFERENCE_CODES,
        CAP_MANAGE_REFERENCE_CODES,
        CAP_VIEW_HIERARCHY,
        CAP_MANAGE_HIERARCHY,
        CAP_REASSIGN_USERS,
        CAP_VIEW_ANALYTICS,
        CAP_SYSTEM_ADMIN,
    }
)

ROLE_CAPABILITIES: Mapping[Role, frozenset[str]] = {
    Role.TOP_ADMIN: ALL_CAPABILITIES,
    Role.DELEGATE_ADMIN: frozenset(
        {
            CAP_VIEW_OWN_PROJECTS,
            CAP_CREATE_PROJECTS,
            CAP_ASSIGN_PROJECTS,
            CAP_VIEW_PROJECT_ASSIGNMENTS,
            CAP_VIEW_USER_DETAILS,
            CAP_VIEW_FINANCIAL_DATA,
            CAP_VIEW_REFERENCE_CODES,
            CAP_GENERATE_REFERENCE_CODES,
            CAP_VIEW_HIERARCHY,
            CAP_REASSIGN_USERS,
            CAP_VIEW_ANALYTICS,
        }
    ),
    Role.SENIOR_FULFILLER: frozenset(
        {
            CAP_VIEW_ALL_PROJECTS,
            CAP_VIEW_ASSIGNED_PROJECTS,
            CAP_ASSIGN_PROJECTS,
            CAP_VIEW_PROJECT_ASSIGNMENTS,
            CAP_VIEW_USER_DETAILS,
            CAP_VIEW_FINANCIAL_DATA,
            CAP_VIEW_REFERENCE_CODES,
            CAP_GENERATE_REFERENCE_CODES,
            CAP_VIEW_HIERARCHY,
            CAP_VIEW_ANALYTICS,
        }
    ),
    Role.FULFILLER: frozenset(
        {
            CAP_VIEW_ASSIGNED_PROJECTS,
            CAP_VIEW_HIERARCHY,
        }
    ),
    Role.CLIENT: frozenset(
        {
            CAP_VIEW_OWN_PROJECTS,
            CAP_CREATE_PROJECTS,
            CAP_VIEW_HIERARCHY,
        }
    ),
}

FIELD_TOTAL_COST = "total_cost"
FIELD_DELEGATE_FEE = "delegate_fee"
FIELD_FULFILLER_PAYMENT = "fulfiller_payment"
FIELD_PROFIT_MARGIN = "profit_margin"
FIELD_PRICING_BREAKDOWN = "pricing_breakdown"
FIELD_PAYMENT_STATUS = "payment_status"
FIELD_AMOUNT_PAID = "amount_paid"
FIELD_AMOUNT_DUE = "amount_due"
FIELD_SYSTEM_PROFIT = "system_profit"
FIELD_TOP_ADMIN_SHARE = "top_admin_share"

FINANCIAL_FIELDS = frozenset(
    {
        FIELD_TOTAL_COST,
        FIELD_DELEGATE_FEE,
        FIELD_FULFILLER_PAYMENT,
        FIELD_PROFIT_MARGIN,
        FIELD_PRICING_BREAKDOWN,
        FIELD_PAYMENT_STATUS,
        FIELD_AMOUNT_PAID,
        FIELD_AMOUNT_DUE,
        FIELD_SYSTEM_PROFIT,
        FIELD_TOP_ADMIN_SHARE,
    }
)
PRICING_FIELDS = frozenset(
    {
        FIELD_TOTAL_COST,
        FIELD_DELEGATE_FEE,
        FIELD_FULFILLER_PAYMENT,
        FIELD_PROFIT_MARGIN,
        FIELD_PRICING_BREAKDOWN,
    }
)
NETWORK_PROFIT_FIELDS = frozenset({FIELD_SYSTEM_PROFIT, FIELD_TOP_ADMIN_SHARE})
INTERNAL_COST_FIELDS = frozenset(
    {FIELD_DELEGATE_FEE, FIELD_FULFILLER_PAYMENT, FIELD_PROFIT_MARGIN} | NETWORK_PROFIT_FIELDS
)

FINANCIAL_ACCESS_LEVELS: Mapping[Role, Mapping[str, bool]] = {
    Role.TOP_ADMIN: {
        "view_all_financials": True,
        "view_profit_data": True,
        "view_payment_distribution": True,
        "view_delegate_fees": True,
        "view_fulfiller_payments": True,
        "view_client_pricing": True,
        "view_network_profits": True,
    },
    Role.DELEGATE_ADMIN: {
        "view_all_financials": False,
        "view_profit_data": False,
        "view_payment_distribution": False,
        "view_delegate_fees": True,
        "view_fulfiller_payments": False,
        "view_client_pricing": True,
        "view_network_profits": False,
    },
    Role.SENIOR_FULFILLER: {
        "view_all_financials": False,
        "view_profit_data": False,
        "view_payment_distribution": True,
        "view_delegate_fees": False,
        "view_fulfiller_payments": True,
        "view_client_pricing": False,
        "view_network_profits": False,
    },
    Role.FULFILLER: {
        "view_all_financials": False,
        "view_profit_data": False,
        "view_payment_distribution": False,
        "view_delegate_fees": False,
        "view_fulfiller_payments": False,
        "view_client_pricing": False,
        "view_network_profits": False,
    },
    Role.CLIENT: {
        "view_all_financials": False,
        "view_profit_data": False,
        "view_payment_distribution": False,
        "view_delegate_fees": False,
        "view_fulfiller_payments": False,
        "view_client_pricing": True,
        "view_network_profits": False,
    },
}


def allowed_capabilities(role: Role) -> frozenset[str]:
    return ROLE_CAPABILITIES[role]


def has_capability(role: Role, capability: str) -> bool:
    return capability in ROLE_CAPABILITIES[role]


def has_financial_permission(role: Role, permission: str) -> bool:
    return FINANCIAL_ACCESS_LEVELS[role].get(permission, False)


def hidden_financial_fields(role: Role, record: Mapping[str, Any], caller_id: str) -> frozenset[str]:
    """Fields of one financial record that ``role`` must not see.

    Ownership-sensitive roles look at ``delegate_id`` / ``client_id`` on the
    record itself; a record without those keys is treated as someone else's.
    """
    if role == Role.TOP_ADMIN:
        return frozenset()
    if role == Role.DELEGATE_ADMIN:
        if record.get("delegate_id") == caller_id:
            return NETWORK_PROFIT_FIELDS
        return NETWORK_PROFIT_FIELDS | PRICING_FIELDS
    if role == Role.SENIOR_FULFILLER:
        return frozenset({FIELD_DELEGATE_FEE, FIELD_PROFIT_MARGIN}) | NETWORK_PROFIT_FIELDS
    if role == Role.CLIENT:
        if record.get("client_id") == caller_id:
            return INTERNAL_COST_FIELDS
        return PRICING_FIELDS | NETWORK_PROFIT_FIELDS
    if role == Role.FULFILLER:
        return FINANCIAL_FIELDS
    raise KeyError(role)
