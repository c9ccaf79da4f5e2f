from __future__ import annotations

import hashlib
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError, TimeoutError as PoolTimeoutError
from werkzeug.security import safe_join
from werkzeug.utils import secure_filename

from app.core.extensions import db
from app.core.models import Registration
from app.registrations.domain import RegistrationCase
from app.registrations.errors import FileRejected, RegistrationNotFound, StaleWrite, UpstreamError, UpstreamTimeout

logger = logging.getLogger(__name__)


class SqlRegistrationStore:
    """Registration persistence with optimistic concurrency on ``version``."""

    def __init__(self, session=None) -> None:
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    @contextmanager
    def _guard(self, operation: str, case_id: str):
        try:
            yield
        except PoolTimeoutError as exc:
            self.session.rollback()
            logger.warning("Registration %s %s timed out: %s", case_id, operation, exc)
            raise UpstreamTimeout(f"{operation} of registration {case_id} timed out") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error("Registration %s %s failed: %s", case_id, operation, exc)
            raise UpstreamError(f"{operation} of registration {case_id} failed") from exc

    def create(self, case: RegistrationCase) -> RegistrationCase:
        case.version = 1
        row = Registration(
            id=case.id,
            applicant_user_id=case.applicant_id,
            package_id=case.selected_package,
            company_name=case.contact.company_name,
            status=case.status.value,
            stage=case.stage.value,
            version=case.version,
            data=case.to_dict(),
            created_at=case.created_at,
            updated_at=case.updated_at,
        )
        with self._guard("create", case.id):
            self.session.add(row)
            self.session.commit()
        return case

    def load(self, case_id: str) -> RegistrationCase:
        with self._guard("load", case_id):
            row = self.session.get(Registration, case_id)
        if row is None:
            raise RegistrationNotFound(case_id)
        return _to_case(row)

    def save(self, case: RegistrationCase, expected_version: int) -> RegistrationCase:
        """Write ``case`` only if the stored row is still at ``expected_version``."""
        new_version = expected_version + 1
        data = case.to_dict()
        data["version"] = new_version
        stmt = (
            update(Registration)
            .where(Registration.id == case.id, Registration.version == expected_version)
            .values(
                status=case.status.value,
                stage=case.stage.value,
                company_name=case.contact.company_name,
                version=new_version,
                data=data,
                updated_at=case.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        with self._guard("save", case.id):
            result = self.session.execute(stmt)
            if result.rowcount != 1:
                self.session.rollback()
                logger.info("Stale write on registration %s at version %s", case.id, expected_version)
                raise StaleWrite(case.id, expected_version)
            self.session.commit()
        case.version = new_version
        return case

    def list_cases(self, applicant_id: int | None = None, status: str | None = None) -> list[RegistrationCase]:
        stmt = select(Registration).order_by(Registration.created_at.desc())
        if applicant_id is not None:
            stmt = stmt.where(Registration.applicant_user_id == applicant_id)
        if status:
            stmt = stmt.where(Registration.status == status)
        with self._guard("list", "*"):
            rows = self.session.execute(stmt).scalars().all()
        return [_to_case(row) for row in rows]


def _to_case(row: Registration) -> RegistrationCase:
    data = dict(row.data)
    data["version"] = row.version
    return RegistrationCase.from_dict(data)


@dataclass(frozen=True)
class FileMetadata:
    filename: str
    content_type: str


@dataclass(frozen=True)
class StoredFile:
    url: str
    storage_ref: str
    name: str
    content_type: str
    size: int


class LocalFileStore:
    """Content-addressed files below ``root``, one directory per owner.

    Stored files are never overwritten or deleted; a replacement is a new
    upload whose reference gets swapped into the case.
    """

    def __init__(self, root: str | Path, url_prefix: str = "/files", max_bytes: int = 10 * 1024 * 1024, allowed_types=()) -> None:
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")
        self.max_bytes = max_bytes
        self.allowed_types = frozenset(allowed_types)

    def upload(self, data: bytes, metadata: FileMetadata, owner_id: int) -> StoredFile:
        name = secure_filename(metadata.filename or "")
        if not name:
            raise FileRejected("file name is missing")
        if not data:
            raise FileRejected(f"{name} is empty")
        if len(data) > self.max_bytes:
            raise FileRejected(f"{name} exceeds the {self.max_bytes // (1024 * 1024)} MB limit")
        content_type = (metadata.content_type or "").split(";")[0].strip().lower()
        if self.allowed_types and content_type not in self.allowed_types:
            raise FileRejected(f"{name}: file type {content_type or 'unknown'} is not allowed")

        digest = hashlib.sha256(data).hexdigest()
        storage_ref = f"{owner_id}/{digest}{Path(name).suffix.lower()}"
        absolute = self.root / storage_ref
        try:
            absolute.parent.mkdir(parents=True, exist_ok=True)
            if not absolute.exists():
                partial = absolute.with_name(f"{absolute.name}.{uuid.uuid4().hex}.part")
                partial.write_bytes(data)
                partial.replace(absolute)
        except OSError as exc:
            logger.error("Could not store %s for owner %s: %s", name, owner_id, exc)
            raise UpstreamError(f"could not store {name}") from exc

        logger.debug("Stored %s (%s bytes) as %s", name, len(data), storage_ref)
        return StoredFile(
            url=f"{self.url_prefix}/{storage_ref}",
            storage_ref=storage_ref,
            name=name,
            content_type=content_type,
            size=len(data),
        )

    def open(self, storage_ref: str) -> Path:
        joined = safe_join(str(self.root), storage_ref)
        if joined is None or not Path(joined).is_file():
            raise FileNotFoundError(storage_ref)
        return Path(joined)
