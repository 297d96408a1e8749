from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, SQLModel


def now_utc() -> datetime:
    return datetime.now(UTC)


class Role(StrEnum):
    TOP_ADMIN = "top_admin"
    DELEGATE_ADMIN = "delegate_admin"
    SENIOR_FULFILLER = "senior_fulfiller"
    FULFILLER = "fulfiller"
    CLIENT = "client"


class CodeType(StrEnum):
    DELEGATE = "delegate"
    SENIOR_FULFILLER = "senior_fulfiller"
    FULFILLER = "fulfiller"
    CLIENT = "client"


class CodeValidationReason(StrEnum):
    MALFORMED = "malformed"
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"


class AssignmentType(StrEnum):
    INITIAL = "initial"
    REASSIGNMENT = "reassignment"


class HierarchyChangeType(StrEnum):
    INSERT = "insert"
    MOVE = "move"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    actor_role: str | None = None
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    display_name: str = Field(index=True)
    role: Role = Field(index=True)
    is_active: bool = Field(default=True)
    reference_code_used: str | None = Field(default=None, index=True)
    recruited_by: str | None = Field(default=None, foreign_key="users.id", index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class HierarchyEdge(SQLModel, table=True):
    __tablename__ = "hierarchy_edges"

    user_id: str = Field(foreign_key="users.id", primary_key=True)
    parent_id: str | None = Field(default=None, foreign_key="users.id", index=True)
    level: int = Field(index=True)
    top_admin_id: str = Field(foreign_key="users.id", index=True)
    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class RecruitmentCode(SQLModel, table=True):
    __tablename__ = "recruitment_codes"
    __table_args__ = (
        Index(
            "uq_recruitment_codes_active_code",
            "code",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index(
            "uq_recruitment_codes_active_owner_type",
            "owner_id",
            "code_type",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    code: str = Field(index=True)
    owner_id: str = Field(foreign_key="users.id", index=True)
    code_type: CodeType = Field(index=True)
    is_active: bool = Field(default=True, index=True)
    expires_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class WorkItem(SQLModel, table=True):
    __tablename__ = "work_items"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    title: str
    client_id: str = Field(foreign_key="users.id", index=True)
    created_by: str = Field(foreign_key="users.id", index=True)
    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class AssignmentRecord(SQLModel, table=True):
    __tablename__ = "assignment_records"
    __table_args__ = (
        Index(
            "uq_assignment_records_current",
            "work_item_id",
            unique=True,
            sqlite_where=text("is_valid = 1"),
            postgresql_where=text("is_valid"),
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    work_item_id: str = Field(foreign_key="work_items.id", index=True)
    assigned_to_id: str = Field(foreign_key="users.id", index=True)
    assigned_to_role: Role
    assigned_by_id: str = Field(foreign_key="users.id", index=True)
    assigned_by_role: Role
    assignment_type: AssignmentType = Field(index=True)
    previous_assigned_to_id: str | None = Field(default=None, foreign_key="users.id")
    notes: str | None = None
    validation_notes: str | None = None
    hierarchy_level: int | None = None
    is_valid: bool = Field(default=True, index=True)
    assigned_at: datetime = Field(default_factory=now_utc, index=True)
    superseded_at: datetime | None = Field(default=None)


class HierarchyChangeLog(SQLModel, table=True):
    __tablename__ = "hierarchy_change_log"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    change_type: HierarchyChangeType = Field(index=True)
    old_parent_id: str | None = None
    new_parent_id: str | None = None
    old_level: int | None = None
    new_level: int
    changed_by: str | None = Field(default=None, index=True)
    reason: str | None = None
    affected_count: int = Field(default=1)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class FinancialAccessAudit(SQLModel, table=True):
    __tablename__ = "financial_access_audit"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    caller_id: str = Field(index=True)
    caller_role: Role
    access_type: str = Field(index=True)
    resource_id: str | None = Field(default=None, index=True)
    resource_type: str | None = None
    success: bool = Field(index=True)
    error_message: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class UserRead(ORMReadModel):
    id: str
    display_name: str
    role: Role
    is_active: bool
    reference_code_used: str | None = None
    recruited_by: str | None = None
    created_at: datetime


class HierarchyEdgeRead(ORMReadModel):
    user_id: str
    parent_id: str | None = None
    level: int
    top_admin_id: str
    version: int
    updated_at: datetime


class BootstrapAdminRequest(BaseModel):
    display_name: str = PydanticField(min_length=1, max_length=200)


class RegisterRequest(BaseModel):
    display_name: str = PydanticField(min_length=1, max_length=200)
    reference_code: str = PydanticField(min_length=1, max_length=32)


class RegisterRead(BaseModel):
    user: UserRead
    edge: HierarchyEdgeRead


class MoveUserRequest(BaseModel):
    user_id: str
    new_parent_id: str
    reason: str | None = PydanticField(default=None, max_length=500)


class HierarchyStatsRead(BaseModel):
    user_id: str
    direct_subordinates: int
    network_size: int
    by_role: dict[str, int]


class HierarchyTreeNode(BaseModel):
    user: UserRead
    level: int
    children: list[HierarchyTreeNode] = PydanticField(default_factory=list)


class HierarchySearchHit(BaseModel):
    id: str
    display_name: str
    role: Role
    level: int
    parent_id: str | None = None


class IntegrityIssue(BaseModel):
    type: str
    user_ids: list[str]


class IntegrityReportRead(BaseModel):
    is_valid: bool
    checked_users: int
    issues: list[IntegrityIssue]


class HierarchyChangeRead(ORMReadModel):
    id: str
    user_id: str
    change_type: HierarchyChangeType
    old_parent_id: str | None = None
    new_parent_id: str | None = None
    old_level: int | None = None
    new_level: int
    changed_by: str | None = None
    reason: str | None = None
    affected_count: int
    created_at: datetime


class RecruitmentCodeRead(ORMReadModel):
    id: str
    code: str
    owner_id: str
    code_type: CodeType
    is_active: bool
    expires_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class CodeUsageStatsRead(BaseModel):
    code: str
    total_uses: int
    recent_uses: int
    last_used_at: datetime | None = None


class RecruitmentCodeWithStatsRead(RecruitmentCodeRead):
    usage: CodeUsageStatsRead


class CodeValidationResult(BaseModel):
    is_valid: bool
    reason: CodeValidationReason | None = None
    owner_id: str | None = None
    code_type: CodeType | None = None


class CodeValidateRequest(BaseModel):
    code: str = PydanticField(min_length=1, max_length=32)


class CodeValidateRead(BaseModel):
    is_valid: bool
    reason: CodeValidationReason | None = None
    code_type: CodeType | None = None
    owner_name: str | None = None
    owner_role: Role | None = None
    message: str


class CodeGenerateRequest(BaseModel):
    code_type: CodeType | None = None
    expires_at: datetime | None = None


class RecruitedUsersPage(BaseModel):
    items: list[UserRead]
    page: int
    limit: int
    total: int
    total_pages: int


class WorkItemCreate(BaseModel):
    title: str = PydanticField(min_length=1, max_length=200)
    client_id: str


class WorkItemRead(ORMReadModel):
    id: str
    title: str
    client_id: str
    created_by: str
    version: int
    created_at: datetime


class AssignRequest(BaseModel):
    work_item_id: str
    assigned_to_id: str
    assignment_type: AssignmentType = AssignmentType.INITIAL
    notes: str | None = PydanticField(default=None, max_length=1000)


class AssignmentCheckRequest(BaseModel):
    assigned_to_id: str


class AssignmentCheckRead(BaseModel):
    is_valid: bool
    message: str


class AssignmentRecordRead(ORMReadModel):
    id: str
    work_item_id: str
    assigned_to_id: str
    assigned_to_role: Role
    assigned_by_id: str
    assigned_by_role: Role
    assignment_type: AssignmentType
    previous_assigned_to_id: str | None = None
    notes: str | None = None
    validation_notes: str | None = None
    hierarchy_level: int | None = None
    is_valid: bool
    assigned_at: datetime
    superseded_at: datetime | None = None


class BulkAssignItem(BaseModel):
    work_item_id: str
    assigned_to_id: str
    assignment_type: AssignmentType = AssignmentType.INITIAL
    notes: str | None = PydanticField(default=None, max_length=1000)


class BulkAssignRequest(BaseModel):
    items: list[BulkAssignItem] = PydanticField(min_length=1, max_length=100)


class BulkAssignResult(BaseModel):
    work_item_id: str
    assigned_to_id: str
    success: bool
    assignment: AssignmentRecordRead | None = None
    error_code: str | None = None
    error: str | None = None


class BulkAssignSummary(BaseModel):
    total: int
    successful: int
    failed: int


class BulkAssignRead(BaseModel):
    results: list[BulkAssignResult]
    summary: BulkAssignSummary


class AssignmentStatisticsRead(BaseModel):
    total_work_items: int
    assigned_work_items: int
    unassigned_work_items: int
    reassignments: int
    distinct_assignees: int
    by_assignee_role: dict[str, int]


class PermissionSummaryRead(BaseModel):
    role: Role
    capabilities: list[str]
    financial: dict[str, bool]


class AccessCheckRead(BaseModel):
    resource_type: str
    resource_id: str
    allowed: bool


class FinancialFilterRequest(BaseModel):
    resource_type: str = "work_item"
    records: list[dict[str, Any]]


class FinancialFilterRead(BaseModel):
    records: list[dict[str, Any]]


class FinancialAccessAuditRead(ORMReadModel):
    id: str
    caller_id: str
    caller_role: Role
    access_type: str
    resource_id: str | None = None
    resource_type: str | None = None
    success: bool
    error_message: str | None = None
    created_at: datetime
