"""Registration lifecycle state machine.

``apply`` validates one action against the current case and returns the
resulting case together with the events it produced. It works on a copy and
performs no I/O: uploads, persistence and event delivery belong to the
caller. Checks always run in the same order: role, terminal case, status,
then guards by priority (payment, details, documents, balance payment).
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from app.core.models import BalancePaymentStatus, RegistrationStatus, UserRole
from app.registrations.catalog import PackageTerms
from app.registrations.domain import (
    CUSTOMER_SIDE,
    FINAL_SIDE,
    STAFF_SIDE,
    CompanyDetails,
    ContactDetails,
    DirectorInfo,
    DocumentBundle,
    RegistrationCase,
    ShareholderInfo,
    new_id,
    resolve_slot,
)
from app.registrations.errors import GuardFailed, IncompleteSet, SlotLocked, UnauthorizedAction
from app.registrations.events import RegistrationEvent
from app.registrations.exchange import PendingBatch, commit, missing_slots, preview_missing, required_staff_slots


class Action(str, Enum):
    APPROVE_PAYMENT = "approve-payment"
    REJECT_PAYMENT = "reject-payment"
    RESUBMIT_PAYMENT = "resubmit-payment"
    SUBMIT_COMPANY_DETAILS = "submit-company-details"
    APPROVE_DETAILS = "approve-details"
    UPLOAD_STAFF_DOCUMENT = "upload-staff-document"
    REMOVE_STAFF_DOCUMENT = "remove-staff-document"
    PUBLISH_DOCUMENTS = "publish-documents"
    UPLOAD_CUSTOMER_DOCUMENT = "upload-customer-document"
    ACKNOWLEDGE_DOCUMENTS = "acknowledge-documents"
    SUBMIT_BALANCE_PAYMENT = "submit-balance-payment"
    APPROVE_BALANCE_PAYMENT = "approve-balance-payment"
    REJECT_BALANCE_PAYMENT = "reject-balance-payment"
    APPROVE_DOCUMENTS = "approve-documents"
    CONTINUE_TO_INCORPORATION = "continue-to-incorporation"
    SUBMIT_FINAL_DOCUMENTS = "submit-final-documents"
    COMPLETE_REGISTRATION = "complete-registration"


ACTION_ALIASES = {Action.CONTINUE_TO_INCORPORATION: Action.APPROVE_DOCUMENTS}

STAFF = frozenset({UserRole.STAFF})
APPLICANT = frozenset({UserRole.APPLICANT})

ACTION_ROLES: dict[Action, frozenset[UserRole]] = {
    Action.APPROVE_PAYMENT: STAFF,
    Action.REJECT_PAYMENT: STAFF,
    Action.RESUBMIT_PAYMENT: APPLICANT,
    Action.SUBMIT_COMPANY_DETAILS: STAFF | APPLICANT,
    Action.APPROVE_DETAILS: STAFF,
    Action.UPLOAD_STAFF_DOCUMENT: STAFF,
    Action.REMOVE_STAFF_DOCUMENT: STAFF,
    Action.PUBLISH_DOCUMENTS: STAFF,
    Action.UPLOAD_CUSTOMER_DOCUMENT: APPLICANT,
    Action.ACKNOWLEDGE_DOCUMENTS: APPLICANT,
    Action.SUBMIT_BALANCE_PAYMENT: APPLICANT,
    Action.APPROVE_BALANCE_PAYMENT: STAFF,
    Action.REJECT_BALANCE_PAYMENT: STAFF,
    Action.APPROVE_DOCUMENTS: STAFF,
    Action.SUBMIT_FINAL_DOCUMENTS: STAFF,
    Action.COMPLETE_REGISTRATION: STAFF,
}

_DOCUMENT_EXCHANGE = frozenset(
    {
        RegistrationStatus.DOCUMENTATION_PROCESSING,
        RegistrationStatus.DOCUMENTS_PUBLISHED,
        RegistrationStatus.INCORPORATION_PROCESSING,
    }
)
_AFTER_PUBLICATION = frozenset({RegistrationStatus.DOCUMENTS_PUBLISHED, RegistrationStatus.INCORPORATION_PROCESSING})

ACTION_STATUSES: dict[Action, frozenset[RegistrationStatus]] = {
    Action.APPROVE_PAYMENT: frozenset({RegistrationStatus.PAYMENT_PROCESSING}),
    Action.REJECT_PAYMENT: frozenset({RegistrationStatus.PAYMENT_PROCESSING}),
    Action.RESUBMIT_PAYMENT: frozenset({RegistrationStatus.PAYMENT_REJECTED}),
    Action.SUBMIT_COMPANY_DETAILS: frozenset({RegistrationStatus.DOCUMENTATION_PROCESSING}),
    Action.APPROVE_DETAILS: frozenset({RegistrationStatus.DOCUMENTATION_PROCESSING}),
    Action.UPLOAD_STAFF_DOCUMENT: _DOCUMENT_EXCHANGE,
    Action.REMOVE_STAFF_DOCUMENT: _DOCUMENT_EXCHANGE,
    Action.PUBLISH_DOCUMENTS: _DOCUMENT_EXCHANGE,
    Action.UPLOAD_CUSTOMER_DOCUMENT: _AFTER_PUBLICATION,
    Action.ACKNOWLEDGE_DOCUMENTS: _AFTER_PUBLICATION,
    Action.SUBMIT_BALANCE_PAYMENT: _DOCUMENT_EXCHANGE,
    Action.APPROVE_BALANCE_PAYMENT: _DOCUMENT_EXCHANGE,
    Action.REJECT_BALANCE_PAYMENT: _DOCUMENT_EXCHANGE,
    Action.APPROVE_DOCUMENTS: frozenset({RegistrationStatus.INCORPORATION_PROCESSING}),
    Action.SUBMIT_FINAL_DOCUMENTS: frozenset({RegistrationStatus.INCORPORATION_PROCESSING}),
    Action.COMPLETE_REGISTRATION: frozenset({RegistrationStatus.DOCUMENTS_SUBMITTED}),
}


@dataclass(frozen=True)
class Transition:
    case: RegistrationCase
    previous: RegistrationCase | None
    events: tuple[RegistrationEvent, ...]
    action: Action | None = None


def parse_action(value: Action | str) -> Action:
    try:
        action = Action(value)
    except ValueError as exc:
        raise GuardFailed("action-not-allowed", f"unknown action {value!r}") from exc
    return ACTION_ALIASES.get(action, action)


def _acting_role(value: UserRole | str, action: str) -> UserRole:
    try:
        return UserRole(value)
    except ValueError as exc:
        raise UnauthorizedAction(action, str(value)) from exc


def _event(case: RegistrationCase, event_type: str, **payload) -> RegistrationEvent:
    payload.setdefault("status", case.status.value)
    payload.setdefault("stage", case.stage.value)
    return RegistrationEvent(type=event_type, case_id=case.id, payload=payload)


def _bundle(value) -> DocumentBundle | None:
    if value is None or isinstance(value, DocumentBundle):
        return value
    if isinstance(value, dict):
        return DocumentBundle.from_dict(value)
    return None


def _batch(case: RegistrationCase, payload: dict, side: str) -> PendingBatch:
    batch = payload.get("batch")
    if isinstance(batch, PendingBatch):
        if batch.side != side:
            raise GuardFailed("action-not-allowed", f"{batch.side} documents cannot be used here")
        return batch
    batch = PendingBatch.for_case(case, side)
    for item in payload.get("documents") or []:
        bundle = _bundle(item.get("document"))
        if bundle is None:
            raise GuardFailed("no-documents-staged", item.get("slot"))
        batch.stage_pending(item.get("slot", ""), bundle, item.get("title"))
    return batch


def _is_advance_balance(terms: PackageTerms | None) -> bool:
    return terms is not None and terms.is_advance_balance


# ---------------------------------------------------------------- guards


def _check_payment_approved(case: RegistrationCase) -> None:
    if not case.payment_approved:
        raise GuardFailed("payment-not-approved")


def _check_details_complete(case: RegistrationCase) -> None:
    if case.company is None:
        raise GuardFailed("details-incomplete", "company")
    missing = case.company.missing_fields()
    if missing:
        raise GuardFailed("details-incomplete", f"company.{missing[0]}")
    if not case.shareholders:
        raise GuardFailed("details-incomplete", "shareholders")
    for index, holder in enumerate(case.shareholders):
        missing = holder.missing_fields()
        if missing:
            raise GuardFailed("details-incomplete", f"shareholders[{index}].{missing[0]}")
    if not case.directors:
        raise GuardFailed("director-required")
    for index, director in enumerate(case.directors):
        missing = director.missing_fields()
        if missing:
            raise GuardFailed("details-incomplete", f"directors[{index}].{missing[0]}")


def _check_details_approved(case: RegistrationCase) -> None:
    if not case.details_approved:
        raise GuardFailed("details-not-approved")


def _check_documents_open(case: RegistrationCase) -> None:
    if case.documents_approved:
        raise GuardFailed("documents-already-approved")


def _check_balance_approved(case: RegistrationCase, terms: PackageTerms | None) -> None:
    if not _is_advance_balance(terms):
        return
    if case.balance_payment is None:
        raise GuardFailed("balance-payment-missing")
    if case.balance_payment.status != BalancePaymentStatus.APPROVED:
        raise GuardFailed("balance-payment-not-approved", case.balance_payment.status.value)


# --------------------------------------------------------------- handlers


def _approve_payment(case, role, payload, terms):
    if case.payment_receipt is None:
        raise GuardFailed("payment-receipt-missing")
    case.approve_payment(role)
    return [_event(case, "payment-approved")]


def _reject_payment(case, role, payload, terms):
    case.reject_payment(role, payload.get("reason"))
    return [_event(case, "payment-rejected", reason=case.payment_rejection_reason)]


def _resubmit_payment(case, role, payload, terms):
    receipt = _bundle(payload.get("receipt"))
    if receipt is None:
        raise GuardFailed("payment-receipt-missing")
    case.resubmit_payment(role, receipt)
    return [_event(case, "payment-resubmitted", receipt=receipt.name)]


def _people(payload: dict, group: str, kind):
    items = payload.get(group) or []
    if not isinstance(items, list):
        raise GuardFailed("details-incomplete", group)
    people = []
    for index, item in enumerate(items):
        if isinstance(item, kind):
            people.append(item)
        elif isinstance(item, dict):
            people.append(kind.from_dict(item))
        else:
            raise GuardFailed("details-incomplete", f"{group}[{index}]")
    return people


def _submit_company_details(case, role, payload, terms):
    _check_payment_approved(case)
    if role == UserRole.APPLICANT and case.details_approved:
        raise GuardFailed("details-already-approved")
    if role == UserRole.STAFF and case.documents_published:
        raise GuardFailed("documents-already-published")
    company = payload.get("company")
    if company is None:
        raise GuardFailed("details-incomplete", "company")
    if not isinstance(company, CompanyDetails):
        if not isinstance(company, dict):
            raise GuardFailed("details-incomplete", "company")
        company = CompanyDetails.from_dict(company)
    shareholders = _people(payload, "shareholders", ShareholderInfo)
    directors = _people(payload, "directors", DirectorInfo)

    existing = {director.id for director in case.directors}
    discarded = case.set_company_details(role, company, shareholders, directors)
    if case.details_approved:
        # Staff amendments must keep an approved record complete
        _check_details_complete(case)
    added = [case.form18_label(director.id) for director in case.directors if director.id not in existing]

    events = [
        _event(
            case,
            "details-submitted",
            shareholders=len(case.shareholders),
            directors=len(case.directors),
        )
    ]
    if added or discarded:
        events.append(_event(case, "director-slots-changed", added=added, discarded=discarded))
    return events


def _approve_details(case, role, payload, terms):
    _check_payment_approved(case)
    if case.details_approved:
        raise GuardFailed("details-already-approved")
    _check_details_complete(case)
    case.approve_details(role)
    return [_event(case, "details-approved")]


def _upload_staff_document(case, role, payload, terms):
    _check_details_approved(case)
    _check_documents_open(case)
    batch = _batch(case, payload, STAFF_SIDE)
    if not len(batch):
        raise GuardFailed("no-documents-staged")
    merged = commit(case, batch, role)
    return [
        _event(
            case,
            "staff-document-uploaded",
            slots=[item.ref.label for item, _ in merged],
            replaced=[item.ref.label for item, previous in merged if previous is not None],
            documents_changed=case.staff_documents_dirty,
        )
    ]


def _remove_staff_document(case, role, payload, terms):
    _check_details_approved(case)
    _check_documents_open(case)
    ref = resolve_slot(case, STAFF_SIDE, payload.get("slot", ""))
    if case.staff_documents.get(ref) is None:
        raise GuardFailed("document-missing", ref.label)
    if case.documents_published and ref.label in required_staff_slots(case):
        # Published sets stay complete; a required slot can only be replaced
        raise GuardFailed("documents-already-published", ref.label)
    case.remove_document(role, ref)
    return [_event(case, "staff-document-removed", slot=ref.label, documents_changed=case.staff_documents_dirty)]


def _publish_documents(case, role, payload, terms):
    _check_details_approved(case)
    _check_documents_open(case)
    republish = case.documents_published
    if republish and not case.staff_documents_dirty:
        raise GuardFailed("documents-already-published")
    batch = _batch(case, payload, STAFF_SIDE)
    merged = commit(case, batch, role, require_complete=True)
    case.mark_published(role)
    return [
        _event(
            case,
            "documents-published",
            republished=republish,
            slots=[item.ref.label for item, _ in merged],
        )
    ]


def _upload_customer_document(case, role, payload, terms):
    _check_documents_open(case)
    batch = _batch(case, payload, CUSTOMER_SIDE)
    if not len(batch):
        raise GuardFailed("no-documents-staged")
    merged = commit(case, batch, role)
    return [
        _event(
            case,
            "customer-document-uploaded",
            slots=[item.ref.label for item, _ in merged],
            documents_changed=case.customer_documents_dirty,
        )
    ]


def _acknowledge_documents(case, role, payload, terms):
    _check_documents_open(case)
    reacknowledge = case.documents_acknowledged
    if reacknowledge and not case.customer_documents_dirty:
        raise GuardFailed("documents-already-acknowledged")
    if case.staff_documents_dirty:
        raise GuardFailed("staff-documents-changed")
    batch = _batch(case, payload, CUSTOMER_SIDE)
    missing = preview_missing(case, batch)
    if missing:
        raise IncompleteSet(missing[0])
    _check_balance_approved(case, terms)
    merged = commit(case, batch, role, require_complete=True)
    case.mark_acknowledged(role)
    return [
        _event(
            case,
            "documents-acknowledged",
            reacknowledged=reacknowledge,
            slots=[item.ref.label for item, _ in merged],
        )
    ]


def _submit_balance_payment(case, role, payload, terms):
    _check_documents_open(case)
    if not _is_advance_balance(terms):
        raise GuardFailed("balance-payment-not-required")
    receipt = _bundle(payload.get("receipt"))
    if receipt is None:
        raise GuardFailed("balance-payment-missing")
    previous = case.submit_balance_payment(role, receipt)
    return [
        _event(
            case,
            "balance-payment-submitted",
            previous_status=previous.status.value if previous else None,
        )
    ]


def _review_balance_payment(approved: bool):
    def handler(case, role, payload, terms):
        _check_documents_open(case)
        if not _is_advance_balance(terms):
            raise GuardFailed("balance-payment-not-required")
        if case.balance_payment is None:
            raise GuardFailed("balance-payment-missing")
        if case.balance_payment.status != BalancePaymentStatus.PENDING:
            raise GuardFailed("balance-payment-not-pending", case.balance_payment.status.value)
        case.review_balance_payment(role, approved, payload.get("reviewer"), payload.get("reason"))
        receipt = case.balance_payment
        return [
            _event(
                case,
                "balance-payment-approved" if approved else "balance-payment-rejected",
                reviewed_by=receipt.reviewed_by,
                reason=receipt.rejection_reason,
            )
        ]

    return handler


def _approve_documents(case, role, payload, terms):
    _check_documents_open(case)
    missing = missing_slots(case, CUSTOMER_SIDE)
    if missing:
        raise GuardFailed("customer-documents-missing", missing[0])
    if case.staff_documents_dirty:
        raise GuardFailed("staff-documents-changed")
    if case.customer_documents_dirty:
        raise GuardFailed("customer-documents-changed")
    _check_balance_approved(case, terms)
    case.approve_documents(role)
    return [_event(case, "documents-approved")]


def _submit_final_documents(case, role, payload, terms):
    if not case.documents_approved:
        raise GuardFailed("documents-not-approved")
    batch = _batch(case, payload, FINAL_SIDE)
    if not len(batch) and case.incorporation_certificate is None and not case.final_documents:
        raise GuardFailed("final-documents-missing")
    commit(case, batch, role)
    case.mark_documents_submitted(role)
    return [
        _event(
            case,
            "final-documents-submitted",
            certificate=case.incorporation_certificate is not None,
            additional=len(case.final_documents),
        )
    ]


def _complete_registration(case, role, payload, terms):
    case.complete(role)
    return [_event(case, "registration-completed")]


_HANDLERS = {
    Action.APPROVE_PAYMENT: _approve_payment,
    Action.REJECT_PAYMENT: _reject_payment,
    Action.RESUBMIT_PAYMENT: _resubmit_payment,
    Action.SUBMIT_COMPANY_DETAILS: _submit_company_details,
    Action.APPROVE_DETAILS: _approve_details,
    Action.UPLOAD_STAFF_DOCUMENT: _upload_staff_document,
    Action.REMOVE_STAFF_DOCUMENT: _remove_staff_document,
    Action.PUBLISH_DOCUMENTS: _publish_documents,
    Action.UPLOAD_CUSTOMER_DOCUMENT: _upload_customer_document,
    Action.ACKNOWLEDGE_DOCUMENTS: _acknowledge_documents,
    Action.SUBMIT_BALANCE_PAYMENT: _submit_balance_payment,
    Action.APPROVE_BALANCE_PAYMENT: _review_balance_payment(True),
    Action.REJECT_BALANCE_PAYMENT: _review_balance_payment(False),
    Action.APPROVE_DOCUMENTS: _approve_documents,
    Action.SUBMIT_FINAL_DOCUMENTS: _submit_final_documents,
    Action.COMPLETE_REGISTRATION: _complete_registration,
}


def allowed_actions(case: RegistrationCase, role: UserRole | str) -> list[str]:
    """Actions whose role and status preconditions hold; guards may still fail."""
    if case.is_terminal:
        return []
    acting = UserRole(role)
    return [
        action.value
        for action in _HANDLERS
        if acting in ACTION_ROLES[action] and case.status in ACTION_STATUSES[action]
    ]


def check_allowed(case: RegistrationCase, action: Action | str, role: UserRole | str) -> tuple[Action, UserRole]:
    """Role, terminal and status checks shared by every action."""
    action = parse_action(action)
    acting = _acting_role(role, action.value)
    if acting not in ACTION_ROLES[action]:
        raise UnauthorizedAction(action.value, acting.value)
    if case.is_terminal:
        raise SlotLocked(case.id)
    if case.status not in ACTION_STATUSES[action]:
        raise GuardFailed("action-not-allowed", f"{action.value} is not allowed from {case.status.value}")
    return action, acting


def apply(
    case: RegistrationCase,
    action: Action | str,
    role: UserRole | str,
    payload: dict | None = None,
    *,
    terms: PackageTerms | None = None,
) -> Transition:
    """Apply ``action`` to a copy of ``case``.

    ``terms`` describes the case's package; without it the case is treated
    as a one-time package. Raises a ``RegistrationError`` and leaves ``case``
    untouched when the action is not allowed.
    """
    action, acting = check_allowed(case, action, role)
    working = case.snapshot()
    events = _HANDLERS[action](working, acting, dict(payload or {}), terms)
    return Transition(case=working, previous=case, events=tuple(events), action=action)


def new_registration(
    applicant_id: int,
    contact: ContactDetails | dict,
    package: PackageTerms,
    payment_receipt: DocumentBundle | dict | None,
    payment_method: str = "bankTransfer",
    role: UserRole | str = UserRole.APPLICANT,
    case_id: str | None = None,
) -> Transition:
    acting = _acting_role(role, "create-registration")
    if acting != UserRole.APPLICANT:
        raise UnauthorizedAction("create-registration", acting.value)
    if not isinstance(contact, ContactDetails):
        contact = ContactDetails.from_dict(contact)
    for name, value in contact.to_dict().items():
        if not value:
            raise GuardFailed("contact-incomplete", name)
    receipt = _bundle(payment_receipt)
    if receipt is None:
        raise GuardFailed("payment-receipt-missing")

    case = RegistrationCase(
        id=case_id or new_id(),
        applicant_id=applicant_id,
        contact=contact,
        selected_package=package.id,
        payment_method=(payment_method or "bankTransfer").strip(),
        payment_receipt=receipt,
    )
    event = _event(
        case,
        "registration-created",
        package=package.id,
        package_type=package.type.value,
        company_name=contact.company_name,
    )
    return Transition(case=case, previous=None, events=(event,))
