from __future__ import annotations

import logging
from collections import Counter, defaultdict
from typing import Any

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from orgcore.domain.errors import (
    AlreadyInitialized,
    CircularReference,
    ConcurrencyConflict,
    InvalidParentRole,
    MaxDepthExceeded,
    NoChangeNeeded,
    ParentNotFound,
    UserNotFound,
)
from orgcore.domain.hierarchy_rules import MAX_DEPTH, TOP_LEVEL, is_valid_parent, recruited_role
from orgcore.domain.models import (
    HierarchyChangeLog,
    HierarchyChangeType,
    HierarchyEdge,
    HierarchySearchHit,
    HierarchyStatsRead,
    HierarchyTreeNode,
    IntegrityIssue,
    IntegrityReportRead,
    Role,
    User,
    UserRead,
    now_utc,
)
from orgcore.infra.db import get_engine
from orgcore.infra.events import EVENT_USER_MOVED, EVENT_USER_REGISTERED, EventBus, event_bus
from orgcore.services.audit_service import AuditService
from orgcore.services.recruitment_code_service import RecruitmentCodeService

logger = logging.getLogger(__name__)


class HierarchyService:
    """Owns the user tree: parent links, levels and the top admin each node hangs under."""

    def __init__(
        self,
        *,
        audit_service: AuditService | None = None,
        code_service: RecruitmentCodeService | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._audit = audit_service or AuditService()
        self._codes = code_service or RecruitmentCodeService()
        self._bus = bus or event_bus

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _locked_edge(self, session: Session, user_id: str) -> HierarchyEdge | None:
        statement = select(HierarchyEdge).where(HierarchyEdge.user_id == user_id).with_for_update()
        return session.exec(statement).first()

    def _descendant_edges(self, session: Session, user_id: str, *, lock: bool = False) -> list[HierarchyEdge]:
        found: list[HierarchyEdge] = []
        visited = {user_id}
        frontier = [user_id]
        # Depth can never exceed MAX_DEPTH, so neither can the walk.
        for _ in range(MAX_DEPTH):
            if not frontier:
                break
            statement = select(HierarchyEdge).where(col(HierarchyEdge.parent_id).in_(frontier))
            if lock:
                statement = statement.with_for_update()
            next_frontier: list[str] = []
            for edge in session.exec(statement).all():
                if edge.user_id in visited:
                    continue
                visited.add(edge.user_id)
                found.append(edge)
                next_frontier.append(edge.user_id)
            frontier = next_frontier
        return found

    def path_ids_in(self, session: Session, user_id: str) -> list[str]:
        path: list[str] = []
        visited: set[str] = set()
        current: str | None = user_id
        for _ in range(MAX_DEPTH + 1):
            if current is None or current in visited:
                break
            edge = session.get(HierarchyEdge, current)
            if edge is None:
                break
            visited.add(current)
            path.append(current)
            current = edge.parent_id
        return path

    def _versioned_update(self, session: Session, edge: HierarchyEdge, values: dict[str, Any]) -> None:
        result = session.execute(
            update(HierarchyEdge)
            .where(col(HierarchyEdge.user_id) == edge.user_id)
            .where(col(HierarchyEdge.version) == edge.version)
            .values(version=edge.version + 1, **values)
        )
        if getattr(result, "rowcount", 0) != 1:
            raise ConcurrencyConflict("hierarchy changed concurrently, retry the request")

    def _create_root(self, session: Session, display_name: str, *, changed_by: str | None) -> tuple[User, HierarchyEdge]:
        user = User(display_name=display_name, role=Role.TOP_ADMIN)
        session.add(user)
        session.flush()
        edge = HierarchyEdge(user_id=user.id, parent_id=None, level=TOP_LEVEL, top_admin_id=user.id)
        session.add(edge)
        self._audit.record_hierarchy_change(
            session,
            user_id=user.id,
            change_type=HierarchyChangeType.INSERT,
            old_parent_id=None,
            new_parent_id=None,
            old_level=None,
            new_level=TOP_LEVEL,
            changed_by=changed_by or user.id,
            reason="top admin created",
        )
        return user, edge

    def insert_user(
        self,
        session: Session,
        user: User,
        parent_id: str,
        *,
        changed_by: str | None,
        reason: str | None = None,
    ) -> HierarchyEdge:
        """Attach a new user under ``parent_id`` inside the caller's transaction."""
        parent = session.get(User, parent_id)
        parent_edge = self._locked_edge(session, parent_id)
        if parent is None or parent_edge is None:
            raise ParentNotFound("parent not found in hierarchy")
        if not is_valid_parent(user.role, parent.role):
            raise InvalidParentRole(f"{parent.role} cannot be the parent of {user.role}")
        level = parent_edge.level + 1
        if level > MAX_DEPTH:
            raise MaxDepthExceeded(f"hierarchy depth is limited to {MAX_DEPTH} levels")

        session.add(user)
        session.flush()
        edge = HierarchyEdge(
            user_id=user.id,
            parent_id=parent.id,
            level=level,
            top_admin_id=parent_edge.top_admin_id,
        )
        session.add(edge)
        self._audit.record_hierarchy_change(
            session,
            user_id=user.id,
            change_type=HierarchyChangeType.INSERT,
            old_parent_id=None,
            new_parent_id=parent.id,
            old_level=None,
            new_level=level,
            changed_by=changed_by,
            reason=reason,
        )
        return edge

    def bootstrap_admin(self, display_name: str) -> tuple[User, HierarchyEdge]:
        with self._session() as session:
            if session.exec(select(User.id)).first() is not None:
                raise AlreadyInitialized("hierarchy already initialized")
            user, edge = self._create_root(session, display_name, changed_by=None)
            session.commit()
            session.refresh(user)
            session.refresh(edge)
        logger.info("bootstrapped top admin %s", user.id)
        return user, edge

    def create_top_admin(self, display_name: str, *, changed_by: str) -> tuple[User, HierarchyEdge]:
        with self._session() as session:
            user, edge = self._create_root(session, display_name, changed_by=changed_by)
            session.commit()
            session.refresh(user)
            session.refresh(edge)
        logger.info("top admin %s created by %s", user.id, changed_by)
        return user, edge

    def register(self, display_name: str, code: str) -> tuple[User, HierarchyEdge]:
        with self._session() as session:
            record = self._codes.resolve_active(session, code)
            user = User(
                display_name=display_name,
                role=recruited_role(record.code_type),
                reference_code_used=record.code,
                recruited_by=record.owner_id,
            )
            edge = self.insert_user(
                session,
                user,
                record.owner_id,
                changed_by=user.id,
                reason=f"registered with {record.code_type} code",
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConcurrencyConflict("registration conflicted with a concurrent change") from exc
            session.refresh(user)
            session.refresh(edge)

        logger.info("registered %s %s under %s", user.role, user.id, edge.parent_id)
        self._bus.notify(
            EVENT_USER_REGISTERED,
            {
                "user_id": user.id,
                "role": str(user.role),
                "parent_id": edge.parent_id,
                "recruited_by": user.recruited_by,
                "level": edge.level,
            },
            actor_id=user.id,
        )
        return user, edge

    def move_user(
        self,
        user_id: str,
        new_parent_id: str,
        reason: str | None = None,
        *,
        changed_by: str,
    ) -> HierarchyEdge:
        with self._session() as session:
            user = session.get(User, user_id)
            edge = self._locked_edge(session, user_id)
            if user is None or edge is None:
                raise UserNotFound("user not found")
            parent = session.get(User, new_parent_id)
            parent_edge = self._locked_edge(session, new_parent_id)
            if parent is None or parent_edge is None:
                raise ParentNotFound("new parent not found in hierarchy")

            descendants = self._descendant_edges(session, user_id, lock=True)
            if new_parent_id == user_id or new_parent_id in {item.user_id for item in descendants}:
                raise CircularReference("a user cannot be moved under itself or its own subordinate")
            if not is_valid_parent(user.role, parent.role):
                raise InvalidParentRole(f"{parent.role} cannot be the parent of {user.role}")
            if edge.parent_id == new_parent_id:
                raise NoChangeNeeded("user is already under that parent")

            new_level = parent_edge.level + 1
            delta = new_level - edge.level
            deepest = max([edge.level, *(item.level for item in descendants)])
            if deepest + delta > MAX_DEPTH:
                raise MaxDepthExceeded(f"move would push the subtree past {MAX_DEPTH} levels")

            old_parent_id = edge.parent_id
            old_level = edge.level
            top_admin_id = parent_edge.top_admin_id
            now = now_utc()
            self._versioned_update(
                session,
                edge,
                {"parent_id": new_parent_id, "level": new_level, "top_admin_id": top_admin_id, "updated_at": now},
            )
            for item in descendants:
                self._versioned_update(
                    session,
                    item,
                    {"level": item.level + delta, "top_admin_id": top_admin_id, "updated_at": now},
                )
            self._audit.record_hierarchy_change(
                session,
                user_id=user_id,
                change_type=HierarchyChangeType.MOVE,
                old_parent_id=old_parent_id,
                new_parent_id=new_parent_id,
                old_level=old_level,
                new_level=new_level,
                changed_by=changed_by,
                reason=reason,
                affected_count=len(descendants) + 1,
            )
            session.commit()
            moved = session.get(HierarchyEdge, user_id)
            if moved is None:
                raise UserNotFound("user not found")
            session.refresh(moved)

        logger.info(
            "moved %s from %s to %s (%d nodes, level %d -> %d)",
            user_id,
            old_parent_id,
            new_parent_id,
            len(descendants) + 1,
            old_level,
            new_level,
        )
        self._bus.notify(
            EVENT_USER_MOVED,
            {
                "user_id": user_id,
                "old_parent_id": old_parent_id,
                "new_parent_id": new_parent_id,
                "old_level": old_level,
                "new_level": new_level,
                "affected_count": len(descendants) + 1,
            },
            actor_id=changed_by,
        )
        return moved

    def get_user(self, user_id: str) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise UserNotFound("user not found")
            return user

    def get_edge(self, user_id: str) -> HierarchyEdge:
        with self._session() as session:
            edge = session.get(HierarchyEdge, user_id)
            if edge is None:
                raise UserNotFound("user not found in hierarchy")
            return edge

    def subordinates(self, user_id: str) -> list[User]:
        with self._session() as session:
            if session.get(User, user_id) is None:
                raise UserNotFound("user not found")
            ids = [edge.user_id for edge in self._descendant_edges(session, user_id)]
            if not ids:
                return []
            statement = select(User).where(col(User.id).in_(ids)).order_by(col(User.created_at).asc())
            return list(session.exec(statement).all())

    def path_to_root(self, user_id: str) -> list[User]:
        with self._session() as session:
            if session.get(User, user_id) is None:
                raise UserNotFound("user not found")
            path: list[User] = []
            for item_id in self.path_ids_in(session, user_id):
                user = session.get(User, item_id)
                if user is not None:
                    path.append(user)
            return path

    def path_ids(self, user_id: str) -> list[str]:
        with self._session() as session:
            return self.path_ids_in(session, user_id)

    def is_self_or_ancestor(self, ancestor_id: str, user_id: str) -> bool:
        """True when ``ancestor_id`` is ``user_id`` or sits on its path to the root."""
        if ancestor_id == user_id:
            return True
        return ancestor_id in self.path_ids(user_id)

    def hierarchy_stats(self, user_id: str) -> HierarchyStatsRead:
        with self._session() as session:
            if session.get(User, user_id) is None:
                raise UserNotFound("user not found")
            descendants = self._descendant_edges(session, user_id)
            ids = [edge.user_id for edge in descendants]
            roles: Counter[str] = Counter()
            if ids:
                for role in session.exec(select(User.role).where(col(User.id).in_(ids))).all():
                    roles[str(role)] += 1
            return HierarchyStatsRead(
                user_id=user_id,
                direct_subordinates=sum(1 for edge in descendants if edge.parent_id == user_id),
                network_size=len(descendants),
                by_role=dict(roles),
            )

    def tree(self, user_id: str, *, include_inactive: bool = False) -> HierarchyTreeNode:
        """Nested view of ``user_id`` and everything below it, children in join order."""
        with self._session() as session:
            root = session.get(User, user_id)
            root_edge = session.get(HierarchyEdge, user_id)
            if root is None or root_edge is None:
                raise UserNotFound("user not found in hierarchy")
            edges = self._descendant_edges(session, user_id)
            ids = [edge.user_id for edge in edges]
            users: dict[str, User] = {}
            if ids:
                users = {item.id: item for item in session.exec(select(User).where(col(User.id).in_(ids))).all()}

        children_of: dict[str, list[HierarchyEdge]] = defaultdict(list)
        for edge in edges:
            if edge.parent_id is not None:
                children_of[edge.parent_id].append(edge)

        def build(user: User, level: int) -> HierarchyTreeNode:
            node = HierarchyTreeNode(user=UserRead.model_validate(user), level=level)
            ordered = sorted(children_of[user.id], key=lambda item: item.created_at)
            for child_edge in ordered:
                child = users.get(child_edge.user_id)
                # An inactive user hides its whole branch.
                if child is None or (not include_inactive and not child.is_active):
                    continue
                node.children.append(build(child, child_edge.level))
            return node

        return build(root, root_edge.level)

    def search(
        self,
        caller_id: str,
        query: str,
        *,
        role: Role | None = None,
        level: int | None = None,
        limit: int = 20,
    ) -> list[HierarchySearchHit]:
        with self._session() as session:
            if session.get(User, caller_id) is None:
                raise UserNotFound("user not found")
            scope = [edge.user_id for edge in self._descendant_edges(session, caller_id)]
            if not scope:
                return []
            statement = (
                select(User, HierarchyEdge)
                .join(HierarchyEdge, col(HierarchyEdge.user_id) == col(User.id))
                .where(col(User.id).in_(scope))
                .where(col(User.is_active).is_(True))
                .where(func.lower(User.display_name).contains(query.strip().lower(), autoescape=True))
            )
            if role is not None:
                statement = statement.where(User.role == role)
            if level is not None:
                statement = statement.where(HierarchyEdge.level == level)
            statement = statement.order_by(col(HierarchyEdge.level).asc(), col(User.display_name).asc()).limit(limit)
            rows = session.exec(statement).all()
        return [
            HierarchySearchHit(
                id=user.id,
                display_name=user.display_name,
                role=user.role,
                level=edge.level,
                parent_id=edge.parent_id,
            )
            for user, edge in rows
        ]

    def changes(self, user_id: str, limit: int = 100) -> list[HierarchyChangeLog]:
        self.get_user(user_id)
        return self._audit.hierarchy_changes(user_id, limit=limit)

    def validate_integrity(self) -> IntegrityReportRead:
        with self._session() as session:
            users = {user.id: user for user in session.exec(select(User)).all()}
            edges = {edge.user_id: edge for edge in session.exec(select(HierarchyEdge)).all()}

        problems: dict[str, set[str]] = defaultdict(set)
        for user_id in users:
            if user_id not in edges:
                problems["missing_edge"].add(user_id)

        for user_id, edge in edges.items():
            user = users.get(user_id)
            if edge.parent_id is None:
                if user is None or user.role != Role.TOP_ADMIN:
                    problems["invalid_root"].add(user_id)
                if edge.level != TOP_LEVEL:
                    problems["level_mismatch"].add(user_id)
                if edge.top_admin_id != user_id:
                    problems["top_admin_mismatch"].add(user_id)
                continue
            parent_edge = edges.get(edge.parent_id)
            parent = users.get(edge.parent_id)
            if parent_edge is None or parent is None:
                problems["orphan"].add(user_id)
                continue
            if edge.level != parent_edge.level + 1:
                problems["level_mismatch"].add(user_id)
            if edge.top_admin_id != parent_edge.top_admin_id:
                problems["top_admin_mismatch"].add(user_id)
            if user is not None and not is_valid_parent(user.role, parent.role):
                problems["invalid_parent_role"].add(user_id)
            if edge.level > MAX_DEPTH:
                problems["depth_violation"].add(user_id)

        for user_id in edges:
            seen: set[str] = set()
            current: str | None = user_id
            while current is not None and current in edges:
                if current in seen:
                    problems["cycle"].add(user_id)
                    break
                seen.add(current)
                current = edges[current].parent_id

        issues = [IntegrityIssue(type=kind, user_ids=sorted(ids)) for kind, ids in sorted(problems.items())]
        if issues:
            logger.warning("hierarchy integrity check found %d issue types", len(issues))
        return IntegrityReportRead(is_valid=not issues, checked_users=len(users), issues=issues)
