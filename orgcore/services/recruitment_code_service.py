from __future__ import annotations

import logging
import math
import re
import secrets
import string
from datetime import UTC, datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from orgcore.domain.errors import (
    CodeNotFound,
    CodesAlreadyExist,
    CodeSpaceExhausted,
    ConcurrencyConflict,
    DuplicateActiveCode,
    InvalidRecruitmentCode,
    PermissionDeniedError,
    UserNotFound,
)
from orgcore.domain.hierarchy_rules import (
    CODE_TYPE_SEGMENT,
    ROLE_CODE_PREFIX,
    recruitable_code_types,
)
from orgcore.domain.models import (
    CodeType,
    CodeUsageStatsRead,
    CodeValidateRead,
    CodeValidationReason,
    CodeValidationResult,
    RecruitedUsersPage,
    RecruitmentCode,
    RecruitmentCodeRead,
    RecruitmentCodeWithStatsRead,
    User,
    UserRead,
    now_utc,
)
from orgcore.infra.db import get_engine

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z]{2}-[A-Z]{3}-[A-Z0-9]{6}$")
CODE_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
CODE_SUFFIX_LENGTH = 6
MAX_GENERATION_ATTEMPTS = 10
RECENT_USAGE_WINDOW = timedelta(days=30)
ACTIVE_OWNER_TYPE_INDEX = "uq_recruitment_codes_active_owner_type"

VALIDATION_MESSAGES = {
    CodeValidationReason.MALFORMED: "code format is invalid",
    CodeValidationReason.NOT_FOUND: "code does not exist",
    CodeValidationReason.INACTIVE: "code is no longer active",
    CodeValidationReason.EXPIRED: "code has expired",
}


def normalize_code(raw: str) -> str:
    return raw.strip().upper()


def _random_suffix() -> str:
    return "".join(secrets.choice(CODE_SUFFIX_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _is_expired(code: RecruitmentCode, now: datetime) -> bool:
    return code.expires_at is not None and _as_utc(code.expires_at) <= now


def _violates_owner_type_index(exc: IntegrityError) -> bool:
    # PostgreSQL names the index, SQLite only lists the indexed columns.
    message = str(exc.orig)
    return ACTIVE_OWNER_TYPE_INDEX in message or "recruitment_codes.owner_id, recruitment_codes.code_type" in message


class RecruitmentCodeService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_owner(self, session: Session, owner_id: str) -> User:
        owner = session.get(User, owner_id)
        if owner is None:
            raise UserNotFound("user not found")
        return owner

    def _get_owned_code(self, session: Session, code_id: str, caller_id: str, *, lock: bool = False) -> RecruitmentCode:
        statement = select(RecruitmentCode).where(RecruitmentCode.id == code_id)
        if lock:
            statement = statement.with_for_update()
        row = session.exec(statement).first()
        # A code owned by someone else is reported exactly like a missing one.
        if row is None or row.owner_id != caller_id:
            raise CodeNotFound("reference code not found")
        return row

    def _active_code_for(self, session: Session, owner_id: str, code_type: CodeType) -> RecruitmentCode | None:
        statement = (
            select(RecruitmentCode)
            .where(RecruitmentCode.owner_id == owner_id)
            .where(RecruitmentCode.code_type == code_type)
            .where(col(RecruitmentCode.is_active).is_(True))
        )
        return session.exec(statement).first()

    def _new_code(self, session: Session, owner: User, code_type: CodeType) -> RecruitmentCode:
        prefix = f"{ROLE_CODE_PREFIX[owner.role]}-{CODE_TYPE_SEGMENT[code_type]}"
        for _ in range(MAX_GENERATION_ATTEMPTS):
            candidate = f"{prefix}-{_random_suffix()}"
            taken = session.exec(select(RecruitmentCode.id).where(RecruitmentCode.code == candidate)).first()
            if taken is None:
                return RecruitmentCode(code=candidate, owner_id=owner.id, code_type=code_type)
            logger.info("recruitment code collision for prefix %s, retrying", prefix)
        raise CodeSpaceExhausted("could not generate a unique reference code")

    def _commit(self, session: Session) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            if _violates_owner_type_index(exc):
                raise DuplicateActiveCode("an active code of this type already exists") from exc
            raise ConcurrencyConflict("reference code changed concurrently, retry the request") from exc

    def _usage(self, session: Session, code: RecruitmentCode) -> CodeUsageStatsRead:
        since = now_utc() - RECENT_USAGE_WINDOW
        total, last_used_at = session.exec(
            select(func.count(), func.max(User.created_at)).where(User.reference_code_used == code.code)
        ).one()
        recent = session.exec(
            select(func.count())
            .select_from(User)
            .where(User.reference_code_used == code.code)
            .where(col(User.created_at) >= since)
        ).one()
        return CodeUsageStatsRead(
            code=code.code,
            total_uses=int(total or 0),
            recent_uses=int(recent or 0),
            last_used_at=last_used_at,
        )

    def generate(
        self,
        owner_id: str,
        code_type: CodeType,
        *,
        expires_at: datetime | None = None,
    ) -> RecruitmentCode:
        with self._session() as session:
            owner = self._get_owner(session, owner_id)
            if code_type not in recruitable_code_types(owner.role):
                raise PermissionDeniedError(f"role {owner.role} cannot issue {code_type} codes")
            if self._active_code_for(session, owner.id, code_type) is not None:
                raise DuplicateActiveCode(f"an active {code_type} code already exists")
            code = self._new_code(session, owner, code_type)
            code.expires_at = expires_at
            session.add(code)
            self._commit(session)
            session.refresh(code)
            logger.info("issued %s recruitment code %s for %s", code_type, code.code, owner.id)
            return code

    def generate_for_owner(self, owner_id: str, *, expires_at: datetime | None = None) -> list[RecruitmentCode]:
        with self._session() as session:
            owner = self._get_owner(session, owner_id)
            code_types = recruitable_code_types(owner.role)
            if not code_types:
                raise PermissionDeniedError(f"role {owner.role} cannot issue reference codes")
            existing = session.exec(select(RecruitmentCode.id).where(RecruitmentCode.owner_id == owner.id)).first()
            if existing is not None:
                raise CodesAlreadyExist("reference codes already exist for this user")
            codes: list[RecruitmentCode] = []
            for code_type in code_types:
                code = self._new_code(session, owner, code_type)
                code.expires_at = expires_at
                session.add(code)
                session.flush()
                codes.append(code)
            self._commit(session)
            for code in codes:
                session.refresh(code)
            logger.info("issued %d recruitment codes for %s", len(codes), owner.id)
            return codes

    def _lookup(self, session: Session, normalized: str) -> RecruitmentCode | None:
        rows = list(session.exec(select(RecruitmentCode).where(RecruitmentCode.code == normalized)).all())
        active = next((row for row in rows if row.is_active), None)
        if active is not None:
            return active
        return rows[0] if rows else None

    def _check(self, session: Session, raw_code: str) -> tuple[RecruitmentCode | None, CodeValidationReason | None]:
        normalized = normalize_code(raw_code)
        if not CODE_PATTERN.match(normalized):
            return None, CodeValidationReason.MALFORMED
        row = self._lookup(session, normalized)
        if row is None:
            return None, CodeValidationReason.NOT_FOUND
        if not row.is_active:
            return row, CodeValidationReason.INACTIVE
        if _is_expired(row, now_utc()):
            return row, CodeValidationReason.EXPIRED
        owner = session.get(User, row.owner_id)
        if owner is None or not owner.is_active:
            return row, CodeValidationReason.INACTIVE
        return row, None

    def validate(self, raw_code: str) -> CodeValidationResult:
        with self._session() as session:
            row, reason = self._check(session, raw_code)
            if reason is not None or row is None:
                return CodeValidationResult(is_valid=False, reason=reason)
            return CodeValidationResult(is_valid=True, owner_id=row.owner_id, code_type=row.code_type)

    def describe(self, raw_code: str) -> CodeValidateRead:
        """Public view of a validation: the owner is only revealed for a usable code."""
        result = self.validate(raw_code)
        if not result.is_valid or result.reason is not None:
            reason = result.reason or CodeValidationReason.NOT_FOUND
            return CodeValidateRead(is_valid=False, reason=reason, message=VALIDATION_MESSAGES[reason])
        with self._session() as session:
            owner = session.get(User, result.owner_id)
        return CodeValidateRead(
            is_valid=True,
            code_type=result.code_type,
            owner_name=owner.display_name if owner is not None else None,
            owner_role=owner.role if owner is not None else None,
            message="code is valid",
        )

    def resolve_active(self, session: Session, raw_code: str) -> RecruitmentCode:
        normalized = normalize_code(raw_code)
        if not CODE_PATTERN.match(normalized):
            raise InvalidRecruitmentCode(VALIDATION_MESSAGES[CodeValidationReason.MALFORMED])
        statement = (
            select(RecruitmentCode)
            .where(RecruitmentCode.code == normalized)
            .where(col(RecruitmentCode.is_active).is_(True))
            .with_for_update()
        )
        row = session.exec(statement).first()
        if row is None:
            _, reason = self._check(session, normalized)
            raise InvalidRecruitmentCode(VALIDATION_MESSAGES[reason or CodeValidationReason.NOT_FOUND])
        if _is_expired(row, now_utc()):
            raise InvalidRecruitmentCode(VALIDATION_MESSAGES[CodeValidationReason.EXPIRED])
        owner = session.get(User, row.owner_id)
        if owner is None or not owner.is_active:
            raise InvalidRecruitmentCode(VALIDATION_MESSAGES[CodeValidationReason.INACTIVE])
        return row

    def deactivate(self, code_id: str, caller_id: str) -> RecruitmentCode:
        with self._session() as session:
            row = self._get_owned_code(session, code_id, caller_id, lock=True)
            if not row.is_active:
                return row
            row.is_active = False
            row.updated_at = now_utc()
            session.add(row)
            self._commit(session)
            session.refresh(row)
            logger.info("deactivated recruitment code %s", row.code)
            return row

    def reactivate(self, code_id: str, caller_id: str) -> RecruitmentCode:
        with self._session() as session:
            row = self._get_owned_code(session, code_id, caller_id, lock=True)
            if row.is_active:
                return row
            if self._active_code_for(session, row.owner_id, row.code_type) is not None:
                raise DuplicateActiveCode(f"another active {row.code_type} code already exists")
            row.is_active = True
            row.updated_at = now_utc()
            session.add(row)
            self._commit(session)
            session.refresh(row)
            logger.info("reactivated recruitment code %s", row.code)
            return row

    def regenerate(self, code_id: str, caller_id: str) -> RecruitmentCode:
        with self._session() as session:
            row = self._get_owned_code(session, code_id, caller_id, lock=True)
            owner = self._get_owner(session, row.owner_id)
            if row.is_active:
                row.is_active = False
                row.updated_at = now_utc()
                session.add(row)
                session.flush()
            elif self._active_code_for(session, row.owner_id, row.code_type) is not None:
                raise DuplicateActiveCode(f"another active {row.code_type} code already exists")
            replacement = self._new_code(session, owner, row.code_type)
            replacement.expires_at = row.expires_at
            session.add(replacement)
            self._commit(session)
            session.refresh(replacement)
            logger.info("regenerated recruitment code %s as %s", row.code, replacement.code)
            return replacement

    def usage_stats(self, code_id: str, caller_id: str) -> CodeUsageStatsRead:
        with self._session() as session:
            row = self._get_owned_code(session, code_id, caller_id)
            return self._usage(session, row)

    def list_for_owner(self, owner_id: str) -> list[RecruitmentCodeWithStatsRead]:
        with self._session() as session:
            statement = (
                select(RecruitmentCode)
                .where(RecruitmentCode.owner_id == owner_id)
                .order_by(col(RecruitmentCode.created_at).desc())
            )
            rows = session.exec(statement).all()
            return [
                RecruitmentCodeWithStatsRead(
                    **RecruitmentCodeRead.model_validate(row).model_dump(),
                    usage=self._usage(session, row),
                )
                for row in rows
            ]

    def recruited_users(self, code_id: str, caller_id: str, *, page: int = 1, limit: int = 20) -> RecruitedUsersPage:
        with self._session() as session:
            row = self._get_owned_code(session, code_id, caller_id)
            total = session.exec(
                select(func.count()).select_from(User).where(User.reference_code_used == row.code)
            ).one()
            statement = (
                select(User)
                .where(User.reference_code_used == row.code)
                .order_by(col(User.created_at).desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            users = session.exec(statement).all()
            return RecruitedUsersPage(
                items=[UserRead.model_validate(item) for item in users],
                page=page,
                limit=limit,
                total=int(total),
                total_pages=math.ceil(int(total) / limit) if total else 0,
            )
