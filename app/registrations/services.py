from __future__ import annotations

import json
import logging

from flask import current_app
from werkzeug.datastructures import FileStorage

from app.core.models import User, UserRole
from app.registrations.catalog import PackageTerms, SqlPackageCatalog
from app.registrations.domain import (
    CUSTOMER_SIDE,
    FINAL_SIDE,
    STAFF_SIDE,
    DocumentSet,
    RegistrationCase,
    resolve_slot,
)
from app.registrations.errors import FileRejected, GuardFailed, RegistrationError, StaleWrite, UnauthorizedAction
from app.registrations.events import EventBus
from app.registrations.exchange import (
    PendingBatch,
    PendingUpload,
    missing_slots,
    required_customer_slots,
    required_staff_slots,
    upload_batch,
)
from app.registrations.storage import LocalFileStore, SqlRegistrationStore
from app.registrations.workflow import Action, Transition, allowed_actions, apply, check_allowed, new_registration

logger = logging.getLogger(__name__)

BATCH_SIDES: dict[Action, str] = {
    Action.UPLOAD_STAFF_DOCUMENT: STAFF_SIDE,
    Action.PUBLISH_DOCUMENTS: STAFF_SIDE,
    Action.UPLOAD_CUSTOMER_DOCUMENT: CUSTOMER_SIDE,
    Action.ACKNOWLEDGE_DOCUMENTS: CUSTOMER_SIDE,
    Action.SUBMIT_FINAL_DOCUMENTS: FINAL_SIDE,
}
RECEIPT_ACTIONS = {Action.RESUBMIT_PAYMENT, Action.SUBMIT_BALANCE_PAYMENT}
IDENTITY_GROUPS = ("shareholders", "directors")
CLIENT_BUNDLE_KEYS = ("receipt", "documents", "batch")


def init_app(app) -> None:
    app.extensions["registration_store"] = SqlRegistrationStore()
    app.extensions["package_catalog"] = SqlPackageCatalog()
    app.extensions["file_store"] = LocalFileStore(
        app.config["UPLOAD_FOLDER"],
        url_prefix=app.config["UPLOAD_URL_PREFIX"],
        max_bytes=app.config["MAX_UPLOAD_BYTES"],
        allowed_types=app.config["ALLOWED_UPLOAD_TYPES"],
    )
    app.extensions["registration_events"] = EventBus()


def _store() -> SqlRegistrationStore:
    return current_app.extensions["registration_store"]


def _catalog() -> SqlPackageCatalog:
    return current_app.extensions["package_catalog"]


def _files() -> LocalFileStore:
    return current_app.extensions["file_store"]


def event_bus() -> EventBus:
    return current_app.extensions["registration_events"]


def _upload(uploads: list[PendingUpload], owner_id: int, signed: bool = False):
    return upload_batch(
        _files(),
        uploads,
        owner_id,
        timeout=current_app.config["UPLOAD_TIMEOUT_SECONDS"],
        max_workers=current_app.config["UPLOAD_MAX_WORKERS"],
        signed=signed,
    )


def _pending_upload(slot: str, file_obj: FileStorage | None, title: str | None = None) -> PendingUpload:
    if not file_obj or not file_obj.filename:
        raise FileRejected(f"Select a file for {slot}")
    return PendingUpload(
        slot=slot,
        filename=file_obj.filename,
        content_type=file_obj.mimetype or "application/octet-stream",
        data=file_obj.read(),
        title=(title or "").strip() or None,
    )


def _publish(transition: Transition) -> None:
    bus = event_bus()
    for event in transition.events:
        bus.publish_event(event)


def _load_for(case_id: str, user: User) -> RegistrationCase:
    case = _store().load(case_id)
    if not user.is_staff and case.applicant_id != user.id:
        raise UnauthorizedAction("access registration", user.role.value)
    return case


def parse_payload(form, json_body: dict | None) -> dict:
    """Merge a JSON body with form fields; ``data`` may carry a JSON document."""
    payload: dict = dict(json_body or {})
    for key in form.keys():
        if key in {"data", "title"}:
            continue
        payload.setdefault(key, form.get(key))
    raw = form.get("data")
    if raw:
        try:
            decoded = json.loads(raw)
        except ValueError as exc:
            raise GuardFailed("details-incomplete", "data is not valid JSON") from exc
        if isinstance(decoded, dict):
            payload.update(decoded)
    return payload


def create_registration(payload: dict, receipt: FileStorage | None, user: User) -> RegistrationCase:
    if user.role != UserRole.APPLICANT:
        raise UnauthorizedAction("create-registration", user.role.value)
    terms = _catalog().resolve(payload.get("package_id") or payload.get("selected_package") or "")
    if receipt is None or not receipt.filename:
        raise GuardFailed("payment-receipt-missing")

    bundles = _upload([_pending_upload("paymentReceipt", receipt)], owner_id=user.id)
    transition = new_registration(
        applicant_id=user.id,
        contact={
            "company_name": payload.get("company_name"),
            "contact_person_name": payload.get("contact_person_name") or user.full_name,
            "contact_person_email": payload.get("contact_person_email") or user.email,
            "contact_person_phone": payload.get("contact_person_phone"),
        },
        package=terms,
        payment_receipt=bundles[0],
        payment_method=payload.get("payment_method") or "bankTransfer",
        role=user.role,
    )
    case = _store().create(transition.case)
    _publish(transition)
    logger.info("Registration %s created by user %s with package %s", case.id, user.id, terms.id)
    return case


def _stored_identity_documents(case: RegistrationCase) -> dict[str, dict]:
    people = [*case.shareholders, *case.directors]
    return {doc.storage_ref: doc.to_dict() for person in people for doc in person.documents}


def _identity_documents(case: RegistrationCase, payload: dict, uploads: list[tuple[str, FileStorage, str | None]]) -> dict:
    # Clients may keep documents already on the case; new ones must be uploaded
    stored = _stored_identity_documents(case)
    for group in IDENTITY_GROUPS:
        for entry in payload.get(group) or []:
            if not isinstance(entry, dict):
                continue
            refs = [doc.get("storage_ref") for doc in entry.get("documents") or [] if isinstance(doc, dict)]
            entry["documents"] = [stored[ref] for ref in refs if ref in stored]

    pending = []
    for key, file_obj, _title in uploads:
        group, _, index = key.partition("[")
        index = index.rstrip("]")
        entries = payload.get(group)
        if (
            group not in IDENTITY_GROUPS
            or not index.isdigit()
            or not isinstance(entries, list)
            or int(index) >= len(entries)
            or not isinstance(entries[int(index)], dict)
        ):
            raise GuardFailed("details-incomplete", f"unknown identity document field {key}")
        pending.append((group, int(index), _pending_upload(key, file_obj)))
    bundles = _upload([item[2] for item in pending], owner_id=case.applicant_id)
    for (group, index, _upload_item), bundle in zip(pending, bundles):
        entry = payload[group][index]
        entry["documents"] = entry["documents"] + [bundle.to_dict()]
    return payload


def _build_action_payload(
    case: RegistrationCase,
    action: Action,
    payload: dict,
    uploads: list[tuple[str, FileStorage, str | None]],
) -> dict:
    # Document bundles only ever come from files uploaded with this request
    for key in CLIENT_BUNDLE_KEYS:
        payload.pop(key, None)
    if action in RECEIPT_ACTIONS:
        receipt = next((file_obj for key, file_obj, _ in uploads if key == "receipt"), None)
        if receipt is not None:
            payload["receipt"] = _upload([_pending_upload("receipt", receipt)], owner_id=case.applicant_id)[0]
        return payload
    if action == Action.SUBMIT_COMPANY_DETAILS:
        return _identity_documents(case, payload, uploads)
    side = BATCH_SIDES.get(action)
    if side is None:
        return payload

    # Resolve every slot before storing anything
    for key, _file_obj, title in uploads:
        resolve_slot(case, side, key, title)
    pending = [_pending_upload(key, file_obj, title) for key, file_obj, title in uploads]
    bundles = _upload(pending, owner_id=case.applicant_id, signed=side == CUSTOMER_SIDE)
    batch = PendingBatch.for_case(case, side)
    for item, bundle in zip(pending, bundles):
        batch.stage_pending(item.slot, bundle, item.title)
    payload["batch"] = batch
    return payload


def perform_action(
    case_id: str,
    action: str,
    user: User,
    payload: dict | None = None,
    uploads: list[tuple[str, FileStorage, str | None]] | None = None,
) -> RegistrationCase:
    """Load, upload, apply, save and notify for one workflow action."""
    payload = dict(payload or {})
    expected = payload.pop("expected_version", None)
    try:
        case = _load_for(case_id, user)
        if expected not in (None, ""):
            if not str(expected).isdigit():
                raise GuardFailed("action-not-allowed", "expected_version must be a number")
            if int(expected) != case.version:
                raise StaleWrite(case.id, int(expected))
        parsed, role = check_allowed(case, action, user.role)
        terms = _catalog().resolve(case.selected_package)
        if parsed == Action.APPROVE_BALANCE_PAYMENT or parsed == Action.REJECT_BALANCE_PAYMENT:
            payload.setdefault("reviewer", user.full_name)
        payload = _build_action_payload(case, parsed, payload, list(uploads or []))
        transition = apply(case, parsed, role, payload, terms=terms)
        saved = _store().save(transition.case, case.version)
    except RegistrationError as exc:
        logger.info("Registration %s: %s by %s rejected (%s: %s)", case_id, action, user.role.value, exc.code, exc.message)
        raise
    _publish(transition)
    logger.info(
        "Registration %s: %s by %s, %s -> %s",
        saved.id,
        parsed.value,
        role.value,
        transition.previous.status.value,
        saved.status.value,
    )
    return saved


def package_terms(case: RegistrationCase) -> PackageTerms:
    return _catalog().resolve(case.selected_package)


def registration_detail(case_id: str, user: User) -> dict:
    case = _load_for(case_id, user)
    data = case.to_dict()
    if not user.is_staff and not case.documents_published:
        # Staff documents stay hidden from the applicant until published
        data["staff_documents"] = DocumentSet().to_dict()
    data["package"] = package_terms(case).to_dict()
    data["allowed_actions"] = allowed_actions(case, user.role)
    data["required_staff_slots"] = required_staff_slots(case)
    data["missing_staff_slots"] = missing_slots(case, STAFF_SIDE)
    data["required_customer_slots"] = required_customer_slots(case)
    data["missing_customer_slots"] = missing_slots(case, CUSTOMER_SIDE)
    return data


def registration_summary(case: RegistrationCase) -> dict:
    return {
        "id": case.id,
        "company_name": case.contact.company_name,
        "selected_package": case.selected_package,
        "status": case.status.value,
        "stage": case.stage.value,
        "balance_status": case.balance_status.value if case.balance_status else None,
        "created_at": case.created_at.isoformat(),
        "updated_at": case.updated_at.isoformat(),
        "version": case.version,
    }


def list_registrations(user: User, status: str | None = None) -> list[dict]:
    applicant_id = None if user.is_staff else user.id
    return [registration_summary(case) for case in _store().list_cases(applicant_id=applicant_id, status=status)]


def list_packages() -> list[dict]:
    return [terms.to_dict() for terms in _catalog().list_active()]


def review_queue() -> list[dict]:
    """Open registrations where staff has at least one action available."""
    return [
        registration_summary(case)
        for case in _store().list_cases()
        if allowed_actions(case, UserRole.STAFF)
    ]


def open_stored_file(storage_ref: str):
    return _files().open(storage_ref)
