"""Staff/applicant document exchange: pending batches, commit and uploads."""
from __future__ import annotations

import copy
import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from app.core.models import UserRole
from app.registrations.domain import (
    ADDRESS_PROOF,
    CUSTOMER_SIDE,
    FINAL_SIDE,
    FIXED_SLOTS,
    REQUIRED_FIXED_SLOTS,
    STAFF_SIDE,
    DocumentBundle,
    DocumentSet,
    RegistrationCase,
    SlotRef,
    additional_slot,
    form18_slot,
    new_id,
    resolve_slot,
)
from app.registrations.errors import (
    IncompleteSet,
    InvalidSlot,
    RegistrationError,
    UnauthorizedAction,
    UpstreamError,
    UpstreamTimeout,
)
from app.registrations.storage import FileMetadata

logger = logging.getLogger(__name__)

SIDE_ROLES = {
    STAFF_SIDE: UserRole.STAFF,
    CUSTOMER_SIDE: UserRole.APPLICANT,
    FINAL_SIDE: UserRole.STAFF,
}


@dataclass(frozen=True)
class StagedDocument:
    ref: SlotRef
    bundle: DocumentBundle


@dataclass
class PendingBatch:
    """Uploaded artifacts waiting for one publish/acknowledge commit.

    Lives only for the duration of a request and is never persisted.
    """

    case_id: str
    side: str
    staged: list[StagedDocument] = field(default_factory=list)
    _case: RegistrationCase | None = field(default=None, repr=False, compare=False)

    @classmethod
    def for_case(cls, case: RegistrationCase, side: str) -> PendingBatch:
        if side not in SIDE_ROLES:
            raise InvalidSlot(side)
        return cls(case_id=case.id, side=side, _case=case)

    def stage_pending(self, slot: str, bundle: DocumentBundle, title: str | None = None) -> SlotRef:
        if self._case is None:
            raise InvalidSlot(slot)
        ref = resolve_slot(self._case, self.side, slot, title)
        if ref.kind == "additional" and ref.key is None:
            # New titled entries get their id now so a commit is repeatable
            ref = SlotRef(ref.side, ref.kind, new_id(), ref.label, ref.title)
        else:
            self.staged = [item for item in self.staged if (item.ref.kind, item.ref.key) != (ref.kind, ref.key)]
        self.staged.append(StagedDocument(ref=ref, bundle=bundle))
        return ref

    def labels(self) -> list[str]:
        return [item.ref.label for item in self.staged]

    def discard(self) -> None:
        self.staged = []

    def __len__(self) -> int:
        return len(self.staged)


def _documents(case: RegistrationCase, side: str) -> DocumentSet:
    if side == STAFF_SIDE:
        return case.staff_documents
    if side == CUSTOMER_SIDE:
        return case.customer_documents
    raise InvalidSlot(side)


def _required_refs(case: RegistrationCase, side: str) -> list[SlotRef]:
    refs = [SlotRef(side, "fixed", FIXED_SLOTS[name], name) for name in REQUIRED_FIXED_SLOTS]
    refs.extend(SlotRef(side, "form18", director.id, form18_slot(index)) for index, director in enumerate(case.directors))
    if side == CUSTOMER_SIDE:
        if case.address_proof_required:
            refs.append(SlotRef(side, "fixed", FIXED_SLOTS[ADDRESS_PROOF], ADDRESS_PROOF))
        refs.extend(
            SlotRef(side, "additional", entry.id, additional_slot(entry.id), entry.title)
            for entry in case.staff_documents.additional
        )
    return refs


def required_staff_slots(case: RegistrationCase) -> list[str]:
    return [ref.label for ref in _required_refs(case, STAFF_SIDE)]


def required_customer_slots(case: RegistrationCase) -> list[str]:
    return [ref.label for ref in _required_refs(case, CUSTOMER_SIDE)]


def missing_slots(case: RegistrationCase, side: str, documents: DocumentSet | None = None) -> list[str]:
    if documents is None:
        documents = _documents(case, side)
    return [ref.label for ref in _required_refs(case, side) if documents.get(ref) is None]


def _check_refs(case: RegistrationCase, batch: PendingBatch) -> None:
    director_ids = {director.id for director in case.directors}
    staff_entries = {entry.id for entry in case.staff_documents.additional}
    for item in batch.staged:
        ref = item.ref
        if ref.side != batch.side:
            raise InvalidSlot(ref.label)
        if ref.kind == "form18" and ref.key not in director_ids:
            raise InvalidSlot(ref.label)
        if ref.kind == "additional" and ref.side == CUSTOMER_SIDE and ref.key not in staff_entries:
            raise InvalidSlot(ref.label)


def preview_missing(case: RegistrationCase, batch: PendingBatch) -> list[str]:
    """Required slots still empty once ``batch`` is merged, without merging it."""
    _check_refs(case, batch)
    documents = copy.deepcopy(_documents(case, batch.side))
    for item in batch.staged:
        documents.put(item.ref, item.bundle)
    return missing_slots(case, batch.side, documents)


def commit(
    case: RegistrationCase,
    batch: PendingBatch,
    role: UserRole | str,
    require_complete: bool = False,
) -> list[tuple[StagedDocument, DocumentBundle | None]]:
    """Merge ``batch`` into ``case`` and clear it.

    Every check runs before the first slot is written, so a failure leaves
    the case as it was.
    """
    if UserRole(role) != SIDE_ROLES[batch.side]:
        raise UnauthorizedAction(f"commit {batch.side} documents", UserRole(role).value)
    if require_complete:
        missing = preview_missing(case, batch)
        if missing:
            raise IncompleteSet(missing[0])
    else:
        _check_refs(case, batch)
    merged = [(item, case.put_document(role, item.ref, item.bundle)) for item in batch.staged]
    batch.discard()
    return merged


@dataclass(frozen=True)
class PendingUpload:
    slot: str
    filename: str
    content_type: str
    data: bytes
    title: str | None = None


def upload_batch(
    file_store,
    uploads: list[PendingUpload],
    owner_id: int,
    timeout: float,
    max_workers: int = 4,
    signed: bool = False,
) -> list[DocumentBundle]:
    """Store every upload in parallel and return bundles in input order.

    All or nothing: the first failure or the timeout aborts the batch.
    Files that were already stored stay orphaned in the file store.
    """
    if not uploads:
        return []

    executor = ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(uploads))))
    try:
        futures = [
            executor.submit(
                file_store.upload,
                upload.data,
                FileMetadata(filename=upload.filename, content_type=upload.content_type),
                owner_id,
            )
            for upload in uploads
        ]
        done, pending = wait(futures, timeout=timeout, return_when=FIRST_EXCEPTION)
        for future in futures:
            if future in done and future.exception() is not None:
                exc = future.exception()
                stored = sum(1 for other in done if other.exception() is None)
                logger.warning("Upload batch aborted for owner %s (%s stored files orphaned): %s", owner_id, stored, exc)
                if isinstance(exc, RegistrationError):
                    raise exc
                raise UpstreamError(f"file upload failed: {exc}") from exc
        if pending:
            logger.warning("Upload batch timed out after %ss for owner %s", timeout, owner_id)
            raise UpstreamTimeout(f"file upload did not finish within {timeout}s")

        bundles = []
        for future in futures:
            stored = future.result()
            bundles.append(
                DocumentBundle(
                    name=stored.name,
                    content_type=stored.content_type,
                    size=stored.size,
                    storage_ref=stored.storage_ref,
                    url=stored.url,
                    signed=signed,
                )
            )
        return bundles
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
