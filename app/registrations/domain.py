"""Registration record: value types, document slots and the case aggregate.

``RegistrationCase`` owns every mutation invariant of a company registration.
Its mutators check the acting role, refuse to touch a completed case and
return the previous value so callers can describe what changed. Status
preconditions and guard ordering live in ``app.registrations.workflow``.
"""
from __future__ import annotations

import copy
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from app.core.models import BalancePaymentStatus, RegistrationStage, RegistrationStatus, UserRole, utcnow
from app.registrations.errors import FileRejected, InvalidSlot, SlotLocked, UnauthorizedAction

STAFF_SIDE = "staff"
CUSTOMER_SIDE = "customer"
FINAL_SIDE = "final"

FIXED_SLOTS: dict[str, str] = {
    "form1": "form1",
    "letterOfEngagement": "letter_of_engagement",
    "aoa": "aoa",
    "addressProof": "address_proof",
}
REQUIRED_FIXED_SLOTS = ("form1", "letterOfEngagement", "aoa")
ADDRESS_PROOF = "addressProof"
ADDITIONAL = "additional"
INCORPORATION_CERTIFICATE = "incorporationCertificate"

_INDEXED_SLOT = re.compile(r"^(form18|additional)\[([^\]]+)\]$")

REQUIRED_COMPANY_FIELDS = (
    "company_name_english",
    "company_name_sinhala",
    "is_foreign_owned",
    "business_address_street",
    "business_address_city",
    "postal_code",
    "share_price",
    "make_simple_books_secretary",
    "import_export_status",
    "other_business_activities",
    "grama_sevaka_division",
    "business_email",
    "business_contact_number",
)


def new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _clean(value: object) -> str:
    return str(value or "").strip()


def form18_slot(index: int) -> str:
    return f"form18[{index}]"


def additional_slot(entry_id: str) -> str:
    return f"additional[{entry_id}]"


@dataclass(frozen=True)
class DocumentBundle:
    name: str
    content_type: str
    size: int
    storage_ref: str
    url: str = ""
    uploaded_at: datetime = field(default_factory=utcnow)
    signed: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "content_type": self.content_type,
            "size": self.size,
            "storage_ref": self.storage_ref,
            "url": self.url,
            "uploaded_at": _iso(self.uploaded_at),
            "signed": self.signed,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> DocumentBundle | None:
        if not data:
            return None
        if not isinstance(data, dict) or not data.get("name") or not data.get("storage_ref"):
            raise FileRejected("document needs a name and a storage_ref")
        try:
            uploaded_at = _parse_dt(data.get("uploaded_at")) or utcnow()
        except (TypeError, ValueError) as exc:
            raise FileRejected(f"invalid uploaded_at for {data['name']}") from exc
        return cls(
            name=data["name"],
            content_type=data.get("content_type") or "application/octet-stream",
            size=int(data["size"]) if str(data.get("size") or "").isdigit() else 0,
            storage_ref=data["storage_ref"],
            url=data.get("url") or "",
            uploaded_at=uploaded_at,
            signed=bool(data.get("signed")),
        )


def _bundles(items: list | None) -> list[DocumentBundle]:
    bundles = []
    for item in items or []:
        bundle = item if isinstance(item, DocumentBundle) else DocumentBundle.from_dict(item)
        if bundle is not None:
            bundles.append(bundle)
    return bundles


@dataclass(frozen=True)
class AdditionalDocument:
    id: str
    title: str
    document: DocumentBundle

    def to_dict(self) -> dict[str, object]:
        return {"id": self.id, "title": self.title, "document": self.document.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> AdditionalDocument:
        return cls(id=data["id"], title=data["title"], document=DocumentBundle.from_dict(data["document"]))


@dataclass
class BalancePaymentReceipt:
    document: DocumentBundle
    status: BalancePaymentStatus = BalancePaymentStatus.PENDING
    submitted_at: datetime = field(default_factory=utcnow)
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    rejection_reason: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "document": self.document.to_dict(),
            "status": self.status.value,
            "submitted_at": _iso(self.submitted_at),
            "reviewed_at": _iso(self.reviewed_at),
            "reviewed_by": self.reviewed_by,
            "rejection_reason": self.rejection_reason,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> BalancePaymentReceipt | None:
        if not data:
            return None
        return cls(
            document=DocumentBundle.from_dict(data["document"]),
            status=BalancePaymentStatus(data.get("status") or BalancePaymentStatus.PENDING.value),
            submitted_at=_parse_dt(data.get("submitted_at")) or utcnow(),
            reviewed_at=_parse_dt(data.get("reviewed_at")),
            reviewed_by=data.get("reviewed_by"),
            rejection_reason=data.get("rejection_reason"),
        )


@dataclass
class ContactDetails:
    company_name: str
    contact_person_name: str
    contact_person_email: str
    contact_person_phone: str

    def to_dict(self) -> dict[str, str]:
        return {
            "company_name": self.company_name,
            "contact_person_name": self.contact_person_name,
            "contact_person_email": self.contact_person_email,
            "contact_person_phone": self.contact_person_phone,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ContactDetails:
        return cls(
            company_name=_clean(data.get("company_name")),
            contact_person_name=_clean(data.get("contact_person_name")),
            contact_person_email=_clean(data.get("contact_person_email")).lower(),
            contact_person_phone=_clean(data.get("contact_person_phone")),
        )


@dataclass
class CompanyDetails:
    company_name_english: str = ""
    company_name_sinhala: str = ""
    is_foreign_owned: str = ""
    business_address_number: str = ""
    business_address_street: str = ""
    business_address_city: str = ""
    postal_code: str = ""
    share_price: str = ""
    make_simple_books_secretary: str = ""
    import_export_status: str = ""
    imports_to_add: str = ""
    exports_to_add: str = ""
    other_business_activities: str = ""
    grama_sevaka_division: str = ""
    business_email: str = ""
    business_contact_number: str = ""

    def missing_fields(self) -> list[str]:
        missing = [name for name in REQUIRED_COMPANY_FIELDS if not _clean(getattr(self, name))]
        if self.import_export_status in {"imports-only", "both"} and not _clean(self.imports_to_add):
            missing.append("imports_to_add")
        if self.import_export_status in {"exports-only", "both"} and not _clean(self.exports_to_add):
            missing.append("exports_to_add")
        return missing

    def to_dict(self) -> dict[str, str]:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data: dict | None) -> CompanyDetails | None:
        if data is None:
            return None
        known = cls.__dataclass_fields__
        return cls(**{key: _clean(value) for key, value in data.items() if key in known})


@dataclass
class ShareholderInfo:
    id: str
    full_name: str
    nic_number: str
    email: str
    contact_number: str
    shares: str
    type: str = "person"
    residency: str = "sri-lankan"
    is_director: bool = False
    documents: list[DocumentBundle] = field(default_factory=list)

    def missing_fields(self) -> list[str]:
        missing = [
            name
            for name in ("full_name", "nic_number", "email", "contact_number", "shares")
            if not _clean(getattr(self, name))
        ]
        if not self.documents:
            missing.append("documents")
        return missing

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "nic_number": self.nic_number,
            "email": self.email,
            "contact_number": self.contact_number,
            "shares": self.shares,
            "type": self.type,
            "residency": self.residency,
            "is_director": self.is_director,
            "documents": [doc.to_dict() for doc in self.documents],
        }

    @classmethod
    def from_dict(cls, data: dict) -> ShareholderInfo:
        return cls(
            id=_clean(data.get("id")) or new_id(),
            full_name=_clean(data.get("full_name")),
            nic_number=_clean(data.get("nic_number")),
            email=_clean(data.get("email")),
            contact_number=_clean(data.get("contact_number")),
            shares=_clean(data.get("shares")),
            type=_clean(data.get("type")) or "person",
            residency=_clean(data.get("residency")) or "sri-lankan",
            is_director=bool(data.get("is_director")),
            documents=_bundles(data.get("documents")),
        )


@dataclass
class DirectorInfo:
    id: str
    full_name: str
    nic_number: str
    email: str
    contact_number: str
    residency: str = "sri-lankan"
    from_shareholder: str | None = None
    documents: list[DocumentBundle] = field(default_factory=list)

    def missing_fields(self) -> list[str]:
        # Identity of shareholder-directors is checked on the shareholder
        if self.from_shareholder:
            return []
        missing = [
            name
            for name in ("full_name", "nic_number", "email", "contact_number")
            if not _clean(getattr(self, name))
        ]
        if not self.documents:
            missing.append("documents")
        return missing

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "nic_number": self.nic_number,
            "email": self.email,
            "contact_number": self.contact_number,
            "residency": self.residency,
            "from_shareholder": self.from_shareholder,
            "documents": [doc.to_dict() for doc in self.documents],
        }

    @classmethod
    def from_dict(cls, data: dict) -> DirectorInfo:
        return cls(
            id=_clean(data.get("id")) or new_id(),
            full_name=_clean(data.get("full_name")),
            nic_number=_clean(data.get("nic_number")),
            email=_clean(data.get("email")),
            contact_number=_clean(data.get("contact_number")),
            residency=_clean(data.get("residency")) or "sri-lankan",
            from_shareholder=_clean(data.get("from_shareholder")) or None,
            documents=_bundles(data.get("documents")),
        )


def derive_directors(
    shareholders: list[ShareholderInfo],
    directors: list[DirectorInfo],
    existing: list[DirectorInfo] | tuple = (),
) -> list[DirectorInfo]:
    """Shareholder-directors first (in shareholder order), then explicit directors.

    A shareholder toggled off as director loses its director entry; one that
    stays a director keeps its director id so its form18 slots survive.
    """
    by_holder = {d.from_shareholder: d for d in existing if d.from_shareholder}
    by_holder.update({d.from_shareholder: d for d in directors if d.from_shareholder})
    derived: list[DirectorInfo] = []
    for holder in shareholders:
        if not holder.is_director:
            continue
        current = by_holder.get(holder.id)
        derived.append(
            DirectorInfo(
                id=current.id if current else new_id(),
                full_name=holder.full_name,
                nic_number=holder.nic_number,
                email=holder.email,
                contact_number=holder.contact_number,
                residency=holder.residency,
                from_shareholder=holder.id,
            )
        )
    return derived + [d for d in directors if not d.from_shareholder]


@dataclass(frozen=True)
class SlotRef:
    side: str
    kind: str
    key: str | None
    label: str
    title: str | None = None


@dataclass
class DocumentSet:
    form1: DocumentBundle | None = None
    letter_of_engagement: DocumentBundle | None = None
    aoa: DocumentBundle | None = None
    address_proof: DocumentBundle | None = None
    form18: dict[str, DocumentBundle] = field(default_factory=dict)
    additional: list[AdditionalDocument] = field(default_factory=list)

    def additional_entry(self, entry_id: str) -> AdditionalDocument | None:
        return next((entry for entry in self.additional if entry.id == entry_id), None)

    def get(self, ref: SlotRef) -> DocumentBundle | None:
        if ref.kind == "fixed":
            return getattr(self, ref.key)
        if ref.kind == "form18":
            return self.form18.get(ref.key)
        if ref.kind == "additional" and ref.key:
            entry = self.additional_entry(ref.key)
            return entry.document if entry else None
        return None

    def put(self, ref: SlotRef, bundle: DocumentBundle) -> DocumentBundle | None:
        previous = self.get(ref)
        if ref.kind == "fixed":
            setattr(self, ref.key, bundle)
        elif ref.kind == "form18":
            self.form18[ref.key] = bundle
        elif ref.kind == "additional":
            existing = self.additional_entry(ref.key) if ref.key else None
            if existing is None:
                # Titles are not deduplicated
                self.additional.append(AdditionalDocument(id=ref.key or new_id(), title=ref.title or "", document=bundle))
            else:
                index = self.additional.index(existing)
                self.additional[index] = AdditionalDocument(id=existing.id, title=existing.title, document=bundle)
        else:
            raise InvalidSlot(ref.label)
        return previous

    def remove(self, ref: SlotRef) -> DocumentBundle | None:
        previous = self.get(ref)
        if ref.kind == "fixed":
            setattr(self, ref.key, None)
        elif ref.kind == "form18":
            self.form18.pop(ref.key, None)
        elif ref.kind == "additional":
            self.additional = [entry for entry in self.additional if entry.id != ref.key]
        return previous

    def to_dict(self) -> dict[str, object]:
        return {
            "form1": self.form1.to_dict() if self.form1 else None,
            "letter_of_engagement": self.letter_of_engagement.to_dict() if self.letter_of_engagement else None,
            "aoa": self.aoa.to_dict() if self.aoa else None,
            "address_proof": self.address_proof.to_dict() if self.address_proof else None,
            "form18": {director_id: doc.to_dict() for director_id, doc in self.form18.items()},
            "additional": [entry.to_dict() for entry in self.additional],
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> DocumentSet:
        data = data or {}
        return cls(
            form1=DocumentBundle.from_dict(data.get("form1")),
            letter_of_engagement=DocumentBundle.from_dict(data.get("letter_of_engagement")),
            aoa=DocumentBundle.from_dict(data.get("aoa")),
            address_proof=DocumentBundle.from_dict(data.get("address_proof")),
            form18={key: DocumentBundle.from_dict(doc) for key, doc in (data.get("form18") or {}).items()},
            additional=[AdditionalDocument.from_dict(entry) for entry in data.get("additional") or []],
        )


def _role(value: UserRole | str) -> UserRole:
    try:
        return UserRole(value)
    except ValueError as exc:
        raise UnauthorizedAction("any", str(value)) from exc


@dataclass
class RegistrationCase:
    id: str
    applicant_id: int
    contact: ContactDetails
    selected_package: str
    status: RegistrationStatus = RegistrationStatus.PAYMENT_PROCESSING
    payment_method: str = "bankTransfer"
    payment_approved: bool = False
    details_approved: bool = False
    documents_approved: bool = False
    payment_receipt: DocumentBundle | None = None
    payment_rejection_reason: str | None = None
    balance_payment: BalancePaymentReceipt | None = None
    company: CompanyDetails | None = None
    shareholders: list[ShareholderInfo] = field(default_factory=list)
    directors: list[DirectorInfo] = field(default_factory=list)
    staff_documents: DocumentSet = field(default_factory=DocumentSet)
    documents_published: bool = False
    documents_published_at: datetime | None = None
    staff_documents_dirty: bool = False
    customer_documents: DocumentSet = field(default_factory=DocumentSet)
    documents_acknowledged: bool = False
    documents_acknowledged_at: datetime | None = None
    customer_documents_dirty: bool = False
    incorporation_certificate: DocumentBundle | None = None
    final_documents: list[AdditionalDocument] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    details_submitted_at: datetime | None = None
    documents_submitted_at: datetime | None = None
    completed_at: datetime | None = None
    version: int = 0

    # ----------------------------------------------------------------- derived

    @property
    def stage(self) -> RegistrationStage:
        status = self.status
        if status in {RegistrationStatus.PAYMENT_PROCESSING, RegistrationStatus.PAYMENT_REJECTED}:
            return RegistrationStage.CONTACT_PAYMENT
        if status == RegistrationStatus.DOCUMENTATION_PROCESSING:
            return RegistrationStage.DOCUMENTATION if self.details_approved else RegistrationStage.COMPANY_DETAILS
        if status == RegistrationStatus.DOCUMENTS_PUBLISHED:
            return RegistrationStage.DOCUMENTATION
        if status == RegistrationStatus.INCORPORATION_PROCESSING:
            return RegistrationStage.INCORPORATION if self.documents_approved else RegistrationStage.DOCUMENTATION
        return RegistrationStage.INCORPORATION

    @property
    def is_terminal(self) -> bool:
        return self.status == RegistrationStatus.COMPLETED

    @property
    def address_proof_required(self) -> bool:
        number = self.company.business_address_number if self.company else ""
        return not _clean(number)

    @property
    def balance_status(self) -> BalancePaymentStatus | None:
        return self.balance_payment.status if self.balance_payment else None

    def form18_label(self, director_id: str) -> str:
        for index, director in enumerate(self.directors):
            if director.id == director_id:
                return form18_slot(index)
        return f"form18[{director_id}]"

    def snapshot(self) -> RegistrationCase:
        return copy.deepcopy(self)

    # ----------------------------------------------------------------- guards

    def _require(self, role: UserRole | str, allowed: set[UserRole], action: str) -> UserRole:
        acting = _role(role)
        if acting not in allowed:
            raise UnauthorizedAction(action, acting.value)
        return acting

    def _ensure_open(self) -> None:
        if self.is_terminal:
            raise SlotLocked(self.id)

    def _touch(self, at: datetime | None = None) -> None:
        self.updated_at = at or utcnow()

    # --------------------------------------------------------------- payment

    def approve_payment(self, role: UserRole | str) -> RegistrationStatus:
        self._require(role, {UserRole.STAFF}, "approve-payment")
        self._ensure_open()
        previous = self.status
        self.payment_approved = True
        self.payment_rejection_reason = None
        self.status = RegistrationStatus.DOCUMENTATION_PROCESSING
        self._touch()
        return previous

    def reject_payment(self, role: UserRole | str, reason: str | None = None) -> RegistrationStatus:
        self._require(role, {UserRole.STAFF}, "reject-payment")
        self._ensure_open()
        previous = self.status
        self.payment_approved = False
        self.payment_rejection_reason = _clean(reason) or None
        self.status = RegistrationStatus.PAYMENT_REJECTED
        self._touch()
        return previous

    def resubmit_payment(self, role: UserRole | str, receipt: DocumentBundle) -> DocumentBundle | None:
        self._require(role, {UserRole.APPLICANT}, "resubmit-payment")
        self._ensure_open()
        previous = self.payment_receipt
        self.payment_receipt = receipt
        self.payment_rejection_reason = None
        self.status = RegistrationStatus.PAYMENT_PROCESSING
        self._touch()
        return previous

    # --------------------------------------------------------- company details

    def set_company_details(
        self,
        role: UserRole | str,
        company: CompanyDetails,
        shareholders: list[ShareholderInfo],
        directors: list[DirectorInfo],
    ) -> list[str]:
        """Replace company data and reconcile form18 slots.

        Returns the labels of form18 documents discarded because their
        director no longer exists.
        """
        self._require(role, {UserRole.APPLICANT, UserRole.STAFF}, "submit-company-details")
        self._ensure_open()
        old_labels = {director.id: self.form18_label(director.id) for director in self.directors}
        self.company = company
        self.shareholders = list(shareholders)
        self.directors = derive_directors(self.shareholders, list(directors), self.directors)
        kept = {director.id for director in self.directors}
        discarded: list[str] = []
        for documents, side in ((self.staff_documents, STAFF_SIDE), (self.customer_documents, CUSTOMER_SIDE)):
            for director_id in sorted(set(documents.form18) - kept):
                documents.form18.pop(director_id)
                discarded.append(f"{side}:{old_labels.get(director_id, director_id)}")
        self.details_submitted_at = utcnow()
        self._touch(self.details_submitted_at)
        return discarded

    def approve_details(self, role: UserRole | str) -> bool:
        self._require(role, {UserRole.STAFF}, "approve-details")
        self._ensure_open()
        previous = self.details_approved
        self.details_approved = True
        self._touch()
        return previous

    # --------------------------------------------------------------- documents

    def put_document(self, role: UserRole | str, ref: SlotRef, bundle: DocumentBundle) -> DocumentBundle | None:
        if ref.side == CUSTOMER_SIDE:
            self._require(role, {UserRole.APPLICANT}, f"upload {ref.label}")
        else:
            self._require(role, {UserRole.STAFF}, f"upload {ref.label}")
        self._ensure_open()
        if ref.side == FINAL_SIDE:
            if ref.kind == "certificate":
                previous = self.incorporation_certificate
                self.incorporation_certificate = bundle
            else:
                previous = None
                self.final_documents.append(AdditionalDocument(id=new_id(), title=ref.title or "", document=bundle))
        elif ref.side == STAFF_SIDE:
            previous = self.staff_documents.put(ref, bundle)
            if self.documents_published:
                self.staff_documents_dirty = True
            if ref.kind == "additional" and self.documents_acknowledged:
                # The new entry needs a counterpart the applicant has not signed yet
                self.documents_acknowledged = False
                self.documents_acknowledged_at = None
                self.customer_documents_dirty = False
                self.status = RegistrationStatus.DOCUMENTS_PUBLISHED
        else:
            previous = self.customer_documents.put(ref, bundle)
            if self.documents_acknowledged:
                self.customer_documents_dirty = True
        self._touch()
        return previous

    def remove_document(self, role: UserRole | str, ref: SlotRef) -> DocumentBundle | None:
        if ref.side == CUSTOMER_SIDE:
            self._require(role, {UserRole.APPLICANT}, f"remove {ref.label}")
        else:
            self._require(role, {UserRole.STAFF}, f"remove {ref.label}")
        self._ensure_open()
        if ref.side == FINAL_SIDE:
            raise InvalidSlot(ref.label)
        documents = self.staff_documents if ref.side == STAFF_SIDE else self.customer_documents
        previous = documents.remove(ref)
        if ref.side == STAFF_SIDE and ref.kind == "additional":
            # Counterparts of a withdrawn staff document are meaningless
            self.customer_documents.remove(ref)
        if ref.side == STAFF_SIDE and self.documents_published:
            self.staff_documents_dirty = True
        if ref.side == CUSTOMER_SIDE and self.documents_acknowledged:
            self.customer_documents_dirty = True
        self._touch()
        return previous

    def mark_published(self, role: UserRole | str, at: datetime | None = None) -> RegistrationStatus:
        self._require(role, {UserRole.STAFF}, "publish-documents")
        self._ensure_open()
        previous = self.status
        self.documents_published = True
        self.documents_published_at = at or utcnow()
        self.staff_documents_dirty = False
        # A re-publish invalidates any acknowledgement of the old content
        self.documents_acknowledged = False
        self.documents_acknowledged_at = None
        self.customer_documents_dirty = False
        self.status = RegistrationStatus.DOCUMENTS_PUBLISHED
        self._touch(self.documents_published_at)
        return previous

    def mark_acknowledged(self, role: UserRole | str, at: datetime | None = None) -> RegistrationStatus:
        self._require(role, {UserRole.APPLICANT}, "acknowledge-documents")
        self._ensure_open()
        previous = self.status
        self.documents_acknowledged = True
        self.documents_acknowledged_at = at or utcnow()
        self.customer_documents_dirty = False
        self.status = RegistrationStatus.INCORPORATION_PROCESSING
        self._touch(self.documents_acknowledged_at)
        return previous

    def approve_documents(self, role: UserRole | str) -> bool:
        self._require(role, {UserRole.STAFF}, "approve-documents")
        self._ensure_open()
        previous = self.documents_approved
        self.documents_approved = True
        self._touch()
        return previous

    # ---------------------------------------------------------- balance payment

    def submit_balance_payment(self, role: UserRole | str, receipt: DocumentBundle) -> BalancePaymentReceipt | None:
        self._require(role, {UserRole.APPLICANT}, "submit-balance-payment")
        self._ensure_open()
        previous = self.balance_payment
        self.balance_payment = BalancePaymentReceipt(document=receipt)
        self._touch(self.balance_payment.submitted_at)
        return previous

    def review_balance_payment(
        self,
        role: UserRole | str,
        approved: bool,
        reviewer: str | None = None,
        reason: str | None = None,
    ) -> BalancePaymentStatus | None:
        self._require(role, {UserRole.STAFF}, "approve-balance-payment" if approved else "reject-balance-payment")
        self._ensure_open()
        receipt = self.balance_payment
        if receipt is None:
            return None
        previous = receipt.status
        receipt.status = BalancePaymentStatus.APPROVED if approved else BalancePaymentStatus.REJECTED
        receipt.reviewed_at = utcnow()
        receipt.reviewed_by = _clean(reviewer) or None
        receipt.rejection_reason = None if approved else (_clean(reason) or None)
        self._touch(receipt.reviewed_at)
        return previous

    # ------------------------------------------------------------ incorporation

    def mark_documents_submitted(self, role: UserRole | str, at: datetime | None = None) -> RegistrationStatus:
        self._require(role, {UserRole.STAFF}, "submit-final-documents")
        self._ensure_open()
        previous = self.status
        self.documents_submitted_at = at or utcnow()
        self.status = RegistrationStatus.DOCUMENTS_SUBMITTED
        self._touch(self.documents_submitted_at)
        return previous

    def complete(self, role: UserRole | str, at: datetime | None = None) -> RegistrationStatus:
        self._require(role, {UserRole.STAFF}, "complete-registration")
        self._ensure_open()
        previous = self.status
        self.completed_at = at or utcnow()
        self.status = RegistrationStatus.COMPLETED
        self._touch(self.completed_at)
        return previous

    # ---------------------------------------------------------- serialisation

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "applicant_id": self.applicant_id,
            "contact": self.contact.to_dict(),
            "selected_package": self.selected_package,
            "payment_method": self.payment_method,
            "status": self.status.value,
            "stage": self.stage.value,
            "payment_approved": self.payment_approved,
            "details_approved": self.details_approved,
            "documents_approved": self.documents_approved,
            "payment_receipt": self.payment_receipt.to_dict() if self.payment_receipt else None,
            "payment_rejection_reason": self.payment_rejection_reason,
            "balance_payment": self.balance_payment.to_dict() if self.balance_payment else None,
            "company": self.company.to_dict() if self.company else None,
            "shareholders": [holder.to_dict() for holder in self.shareholders],
            "directors": [director.to_dict() for director in self.directors],
            "staff_documents": self.staff_documents.to_dict(),
            "documents_published": self.documents_published,
            "documents_published_at": _iso(self.documents_published_at),
            "staff_documents_dirty": self.staff_documents_dirty,
            "customer_documents": self.customer_documents.to_dict(),
            "documents_acknowledged": self.documents_acknowledged,
            "documents_acknowledged_at": _iso(self.documents_acknowledged_at),
            "customer_documents_dirty": self.customer_documents_dirty,
            "address_proof_required": self.address_proof_required,
            "incorporation_certificate": (
                self.incorporation_certificate.to_dict() if self.incorporation_certificate else None
            ),
            "final_documents": [entry.to_dict() for entry in self.final_documents],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "details_submitted_at": _iso(self.details_submitted_at),
            "documents_submitted_at": _iso(self.documents_submitted_at),
            "completed_at": _iso(self.completed_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> RegistrationCase:
        return cls(
            id=data["id"],
            applicant_id=int(data["applicant_id"]),
            contact=ContactDetails.from_dict(data.get("contact") or {}),
            selected_package=data["selected_package"],
            payment_method=data.get("payment_method") or "bankTransfer",
            status=RegistrationStatus(data["status"]),
            payment_approved=bool(data.get("payment_approved")),
            details_approved=bool(data.get("details_approved")),
            documents_approved=bool(data.get("documents_approved")),
            payment_receipt=DocumentBundle.from_dict(data.get("payment_receipt")),
            payment_rejection_reason=data.get("payment_rejection_reason"),
            balance_payment=BalancePaymentReceipt.from_dict(data.get("balance_payment")),
            company=CompanyDetails.from_dict(data.get("company")),
            shareholders=[ShareholderInfo.from_dict(item) for item in data.get("shareholders") or []],
            directors=[DirectorInfo.from_dict(item) for item in data.get("directors") or []],
            staff_documents=DocumentSet.from_dict(data.get("staff_documents")),
            documents_published=bool(data.get("documents_published")),
            documents_published_at=_parse_dt(data.get("documents_published_at")),
            staff_documents_dirty=bool(data.get("staff_documents_dirty")),
            customer_documents=DocumentSet.from_dict(data.get("customer_documents")),
            documents_acknowledged=bool(data.get("documents_acknowledged")),
            documents_acknowledged_at=_parse_dt(data.get("documents_acknowledged_at")),
            customer_documents_dirty=bool(data.get("customer_documents_dirty")),
            incorporation_certificate=DocumentBundle.from_dict(data.get("incorporation_certificate")),
            final_documents=[AdditionalDocument.from_dict(entry) for entry in data.get("final_documents") or []],
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
            details_submitted_at=_parse_dt(data.get("details_submitted_at")),
            documents_submitted_at=_parse_dt(data.get("documents_submitted_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            version=int(data.get("version") or 0),
        )


def resolve_slot(case: RegistrationCase, side: str, name: str, title: str | None = None) -> SlotRef:
    """Map a slot name to a reference against the current case.

    ``form18[i]`` is resolved to the id of the director at position ``i``
    at call time; later reordering of directors does not move the slot.
    """
    name = _clean(name)
    title = _clean(title) or None
    if side == FINAL_SIDE:
        if name == INCORPORATION_CERTIFICATE:
            return SlotRef(side, "certificate", None, name)
        if name == ADDITIONAL and title:
            return SlotRef(side, "additional", None, name, title)
        raise InvalidSlot(name)
    if side not in {STAFF_SIDE, CUSTOMER_SIDE}:
        raise InvalidSlot(name)
    if name in FIXED_SLOTS:
        return SlotRef(side, "fixed", FIXED_SLOTS[name], name)
    if name == ADDITIONAL and side == STAFF_SIDE and title:
        return SlotRef(side, "additional", None, name, title)
    match = _INDEXED_SLOT.match(name)
    if match is None:
        raise InvalidSlot(name)
    kind, raw = match.groups()
    if kind == "form18":
        if not raw.isdigit() or int(raw) >= len(case.directors):
            raise InvalidSlot(name)
        return SlotRef(side, "form18", case.directors[int(raw)].id, name)
    entry = case.staff_documents.additional_entry(raw)
    if entry is None:
        raise InvalidSlot(name)
    return SlotRef(side, "additional", entry.id, name, entry.title)
