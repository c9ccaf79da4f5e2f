from __future__ import annotations

import pytest

from app.core.models import BalancePaymentStatus, RegistrationStage, RegistrationStatus, UserRole
from app.registrations.domain import ContactDetails, DocumentBundle, RegistrationCase, ShareholderInfo
from app.registrations.errors import FileRejected, GuardFailed, SlotLocked, UnauthorizedAction
from app.registrations.workflow import (
    ACTION_ROLES,
    ACTION_STATUSES,
    Action,
    allowed_actions,
    apply,
    new_registration,
)


def _role_for(action: Action) -> UserRole:
    return sorted(ACTION_ROLES[action], key=lambda role: role.value)[0]


def test_new_registration_starts_at_payment_processing(one_time, bundle):
    transition = new_registration(
        7,
        {
            "company_name": "Ceylon Tea Traders",
            "contact_person_name": "Kamala Silva",
            "contact_person_email": "KAMALA@example.lk",
            "contact_person_phone": "0711111111",
        },
        one_time,
        bundle("receipt.pdf"),
    )

    case = transition.case
    assert case.status == RegistrationStatus.PAYMENT_PROCESSING
    assert case.stage == RegistrationStage.CONTACT_PAYMENT
    assert case.selected_package == "basic"
    assert case.contact.contact_person_email == "kamala@example.lk"
    assert [event.type for event in transition.events] == ["registration-created"]


def test_new_registration_requires_receipt_and_contact(one_time, bundle):
    contact = {
        "company_name": "Ceylon Tea Traders",
        "contact_person_name": "Kamala Silva",
        "contact_person_email": "kamala@example.lk",
        "contact_person_phone": "",
    }
    with pytest.raises(GuardFailed) as missing_phone:
        new_registration(7, contact, one_time, bundle())
    assert missing_phone.value.reason == "contact-incomplete"
    assert missing_phone.value.detail == "contact_person_phone"

    contact["contact_person_phone"] = "0711111111"
    with pytest.raises(GuardFailed) as missing_receipt:
        new_registration(7, contact, one_time, None)
    assert missing_receipt.value.reason == "payment-receipt-missing"

    with pytest.raises(UnauthorizedAction):
        new_registration(7, contact, one_time, bundle(), role="staff")


def test_scenario_approve_payment_moves_to_company_details(case_builder):
    case = case_builder("payment-processing")

    result = apply(case, "approve-payment", "staff")

    assert result.case.status == RegistrationStatus.DOCUMENTATION_PROCESSING
    assert result.case.stage == RegistrationStage.COMPANY_DETAILS
    assert result.case.payment_approved is True
    assert case.status == RegistrationStatus.PAYMENT_PROCESSING
    assert [event.type for event in result.events] == ["payment-approved"]


def test_approve_payment_requires_receipt():
    case = RegistrationCase(
        id="c1",
        applicant_id=1,
        contact=ContactDetails("Acme", "A", "a@example.lk", "071"),
        selected_package="basic",
    )
    with pytest.raises(GuardFailed) as exc:
        apply(case, "approve-payment", "staff")
    assert exc.value.reason == "payment-receipt-missing"


def test_payment_rejection_and_resubmission(case_builder, bundle):
    case = case_builder("payment-processing")

    rejected = apply(case, "reject-payment", "staff", {"reason": "Amount does not match"}).case
    assert rejected.status == RegistrationStatus.PAYMENT_REJECTED
    assert rejected.stage == RegistrationStage.CONTACT_PAYMENT
    assert rejected.payment_rejection_reason == "Amount does not match"

    with pytest.raises(GuardFailed) as exc:
        apply(rejected, "resubmit-payment", "applicant", {})
    assert exc.value.reason == "payment-receipt-missing"

    resubmitted = apply(rejected, "resubmit-payment", "applicant", {"receipt": bundle("receipt-2.pdf")}).case
    assert resubmitted.status == RegistrationStatus.PAYMENT_PROCESSING
    assert resubmitted.payment_receipt.name == "receipt-2.pdf"
    assert resubmitted.payment_rejection_reason is None


def test_wrong_role_is_unauthorized(case_builder):
    case = case_builder("payment-processing")
    before = case.to_dict()

    with pytest.raises(UnauthorizedAction):
        apply(case, "approve-payment", "applicant")
    with pytest.raises(UnauthorizedAction):
        apply(case, "approve-payment", "guest")

    assert case.to_dict() == before


@pytest.mark.parametrize(
    "step",
    ["payment-processing", "payment-approved", "details-approved", "published", "acknowledged", "documents-submitted"],
)
def test_disallowed_actions_leave_case_unchanged(case_builder, step):
    case = case_builder(step)
    before = case.to_dict()

    disallowed = [action for action in ACTION_ROLES if case.status not in ACTION_STATUSES[action]]
    assert disallowed
    for action in disallowed:
        with pytest.raises(GuardFailed) as exc:
            apply(case, action, _role_for(action))
        assert exc.value.reason == "action-not-allowed"
        assert case.to_dict() == before


def test_failed_guard_leaves_input_untouched(case_builder, advance_balance):
    case = case_builder("customer-uploaded", terms=advance_balance)
    before = case.to_dict()

    with pytest.raises(GuardFailed):
        apply(case, "acknowledge-documents", "applicant", terms=advance_balance)

    assert case.to_dict() == before


def test_company_details_guards(case_builder, company_details):
    case = case_builder("payment-approved")

    payload = company_details()
    payload["company"]["business_email"] = ""
    submitted = apply(case, "submit-company-details", "applicant", payload).case
    with pytest.raises(GuardFailed) as exc:
        apply(submitted, "approve-details", "staff")
    assert exc.value.reason == "details-incomplete"
    assert exc.value.detail == "company.business_email"

    payload = company_details()
    payload["company"]["import_export_status"] = "both"
    submitted = apply(case, "submit-company-details", "applicant", payload).case
    with pytest.raises(GuardFailed) as exc:
        apply(submitted, "approve-details", "staff")
    assert exc.value.detail == "company.imports_to_add"

    payload = company_details()
    payload["shareholders"][0]["is_director"] = False
    submitted = apply(case, "submit-company-details", "applicant", payload).case
    with pytest.raises(GuardFailed) as exc:
        apply(submitted, "approve-details", "staff")
    assert exc.value.reason == "director-required"

    payload = company_details()
    payload["shareholders"][0]["documents"] = []
    submitted = apply(case, "submit-company-details", "applicant", payload).case
    with pytest.raises(GuardFailed) as exc:
        apply(submitted, "approve-details", "staff")
    assert exc.value.detail == "shareholders[0].documents"


def test_explicit_director_joins_derived_directors(case_builder, company_details, bundle):
    case = case_builder("payment-approved")
    payload = company_details()
    payload["directors"] = [
        {
            "full_name": "Ruwan Jayasinghe",
            "nic_number": "198812345V",
            "email": "ruwan@example.lk",
            "contact_number": "0779999999",
            "documents": [bundle("ruwan-nic.pdf").to_dict()],
        }
    ]

    result = apply(case, "submit-company-details", "applicant", payload)

    directors = result.case.directors
    assert [director.from_shareholder for director in directors] == ["holder-0", None]
    assert all(director.id for director in directors)
    slot_event = next(event for event in result.events if event.type == "director-slots-changed")
    assert slot_event.payload["added"] == ["form18[0]", "form18[1]"]


def test_stage_follows_status_and_gates(case_builder, advance_balance):
    assert case_builder("payment-approved").stage == RegistrationStage.COMPANY_DETAILS
    assert case_builder("details-submitted").stage == RegistrationStage.COMPANY_DETAILS
    assert case_builder("details-approved").stage == RegistrationStage.DOCUMENTATION
    assert case_builder("published").stage == RegistrationStage.DOCUMENTATION
    assert case_builder("acknowledged").stage == RegistrationStage.DOCUMENTATION
    assert case_builder("documents-approved").stage == RegistrationStage.INCORPORATION
    assert case_builder("completed", terms=advance_balance).stage == RegistrationStage.INCORPORATION


def test_applicant_cannot_resubmit_details_after_approval(case_builder, company_details):
    case = case_builder("details-approved")
    with pytest.raises(GuardFailed) as exc:
        apply(case, "submit-company-details", "applicant", company_details())
    assert exc.value.reason == "details-already-approved"


def test_acknowledge_with_advance_balance_requires_approved_balance(case_builder, advance_balance, bundle):
    case = case_builder("customer-uploaded", terms=advance_balance)

    with pytest.raises(GuardFailed) as missing:
        apply(case, "acknowledge-documents", "applicant", terms=advance_balance)
    assert missing.value.reason == "balance-payment-missing"

    pending = apply(case, "submit-balance-payment", "applicant", {"receipt": bundle("balance.pdf")}, terms=advance_balance).case
    with pytest.raises(GuardFailed) as not_approved:
        apply(pending, "acknowledge-documents", "applicant", terms=advance_balance)
    assert not_approved.value.reason == "balance-payment-not-approved"

    rejected = apply(pending, "reject-balance-payment", "staff", {"reason": "Blurry"}, terms=advance_balance).case
    with pytest.raises(GuardFailed):
        apply(rejected, "acknowledge-documents", "applicant", terms=advance_balance)

    approved = apply(
        apply(rejected, "submit-balance-payment", "applicant", {"receipt": bundle("balance-2.pdf")}, terms=advance_balance).case,
        "approve-balance-payment",
        "staff",
        {"reviewer": "Registration Admin"},
        terms=advance_balance,
    ).case
    acknowledged = apply(approved, "acknowledge-documents", "applicant", terms=advance_balance).case
    assert acknowledged.status == RegistrationStatus.INCORPORATION_PROCESSING
    assert acknowledged.documents_acknowledged is True


def test_balance_rejection_never_moves_the_case(case_builder, advance_balance, bundle):
    case = case_builder("published", terms=advance_balance)
    pending = apply(case, "submit-balance-payment", "applicant", {"receipt": bundle("balance.pdf")}, terms=advance_balance)
    assert pending.case.balance_payment.status == BalancePaymentStatus.PENDING

    rejected = apply(
        pending.case,
        "reject-balance-payment",
        "staff",
        {"reviewer": "Registration Admin", "reason": "Wrong amount"},
        terms=advance_balance,
    ).case

    assert rejected.status == pending.case.status
    assert rejected.stage == pending.case.stage
    assert rejected.balance_payment.status == BalancePaymentStatus.REJECTED
    assert rejected.balance_payment.reviewed_by == "Registration Admin"
    assert rejected.balance_payment.rejection_reason == "Wrong amount"

    resubmitted = apply(rejected, "submit-balance-payment", "applicant", {"receipt": bundle("balance-2.pdf")}, terms=advance_balance)
    assert resubmitted.case.balance_payment.status == BalancePaymentStatus.PENDING
    assert resubmitted.case.balance_payment.reviewed_at is None
    assert resubmitted.events[0].payload["previous_status"] == "rejected"


def test_balance_review_requires_pending_receipt(case_builder, advance_balance, one_time, bundle):
    case = case_builder("published", terms=advance_balance)
    with pytest.raises(GuardFailed) as missing:
        apply(case, "approve-balance-payment", "staff", terms=advance_balance)
    assert missing.value.reason == "balance-payment-missing"

    approved = case_builder("balance-approved", terms=advance_balance)
    with pytest.raises(GuardFailed) as not_pending:
        apply(approved, "reject-balance-payment", "staff", terms=advance_balance)
    assert not_pending.value.reason == "balance-payment-not-pending"

    with pytest.raises(GuardFailed) as not_required:
        apply(case_builder("published"), "submit-balance-payment", "applicant", {"receipt": bundle()}, terms=one_time)
    assert not_required.value.reason == "balance-payment-not-required"


def test_scenario_continue_to_incorporation_waits_for_balance(case_builder, advance_balance, bundle):
    acknowledged = case_builder("acknowledged", terms=advance_balance)
    case = apply(
        acknowledged,
        "submit-balance-payment",
        "applicant",
        {"receipt": bundle("balance-top-up.pdf")},
        terms=advance_balance,
    ).case
    assert case.balance_payment.status == BalancePaymentStatus.PENDING

    with pytest.raises(GuardFailed) as exc:
        apply(case, "continue-to-incorporation", "staff", terms=advance_balance)
    assert exc.value.reason == "balance-payment-not-approved"

    approved = apply(case, "approve-balance-payment", "staff", terms=advance_balance).case
    result = apply(approved, "continue-to-incorporation", "staff", terms=advance_balance)
    assert result.action == Action.APPROVE_DOCUMENTS
    assert result.case.documents_approved is True
    assert result.case.stage == RegistrationStage.INCORPORATION


def test_final_documents_and_completion(case_builder, bundle):
    case = case_builder("documents-approved")
    with pytest.raises(GuardFailed) as exc:
        apply(case, "submit-final-documents", "staff", {})
    assert exc.value.reason == "final-documents-missing"

    submitted = apply(
        case,
        "submit-final-documents",
        "staff",
        {"documents": [{"slot": "additional", "title": "Form 20", "document": bundle("form20.pdf")}]},
    ).case
    assert submitted.status == RegistrationStatus.DOCUMENTS_SUBMITTED
    assert submitted.final_documents[0].title == "Form 20"
    assert submitted.documents_submitted_at is not None

    completed = apply(submitted, "complete-registration", "staff").case
    assert completed.status == RegistrationStatus.COMPLETED
    assert completed.completed_at is not None


def test_final_documents_need_documents_approved(case_builder, bundle):
    case = case_builder("acknowledged")
    payload = {"documents": [{"slot": "incorporationCertificate", "document": bundle("certificate.pdf")}]}
    with pytest.raises(GuardFailed) as exc:
        apply(case, "submit-final-documents", "staff", payload)
    assert exc.value.reason == "documents-not-approved"


def test_completed_case_is_locked(case_builder, bundle):
    case = case_builder("completed")
    before = case.to_dict()

    for action in ACTION_ROLES:
        with pytest.raises(SlotLocked) as exc:
            apply(case, action, _role_for(action))
        assert exc.value.reason == "registration-completed"

    ref = case.form18_label(case.directors[0].id)
    assert ref == "form18[0]"
    with pytest.raises(SlotLocked):
        case.approve_documents("staff")
    assert case.to_dict() == before
    assert allowed_actions(case, "staff") == []


def test_allowed_actions_follow_role_and_status(case_builder):
    case = case_builder("published")
    assert "acknowledge-documents" in allowed_actions(case, "applicant")
    assert "approve-payment" not in allowed_actions(case, "staff")
    assert "publish-documents" in allowed_actions(case, "staff")


def test_unknown_action_is_rejected(case_builder):
    with pytest.raises(GuardFailed) as exc:
        apply(case_builder(), "teleport", "staff")
    assert exc.value.reason == "action-not-allowed"


def test_malformed_receipt_is_rejected(case_builder):
    case = case_builder("payment-processing")
    rejected = apply(case, "reject-payment", "staff", {"reason": "Unreadable"}).case

    with pytest.raises(FileRejected):
        apply(rejected, "resubmit-payment", "applicant", {"receipt": {"name": "x.pdf"}})
    with pytest.raises(FileRejected):
        DocumentBundle.from_dict({"storage_ref": "1/x.pdf", "name": "x.pdf", "uploaded_at": "yesterday"})
    assert rejected.status == RegistrationStatus.PAYMENT_REJECTED


def test_empty_identity_documents_are_dropped(bundle):
    holder = ShareholderInfo.from_dict(
        {"id": "holder-1", "full_name": "Kamal Silva", "documents": [{}, None, bundle("nic.pdf").to_dict()]}
    )

    assert [doc.name for doc in holder.documents] == ["nic.pdf"]
    assert holder.to_dict()["documents"][0]["storage_ref"] == "1/nic.pdf"


def test_company_details_reject_malformed_people(case_builder, company_details):
    case = case_builder("payment-approved")

    payload = company_details()
    payload["directors"] = "nobody"
    with pytest.raises(GuardFailed) as exc:
        apply(case, "submit-company-details", "applicant", payload)
    assert exc.value.reason == "details-incomplete"
    assert exc.value.detail == "directors"

    payload = company_details()
    payload["company"] = ["not", "a", "mapping"]
    with pytest.raises(GuardFailed) as company:
        apply(case, "submit-company-details", "applicant", payload)
    assert company.value.detail == "company"
