from __future__ import annotations

import sys
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import create_app
from app.core.config import Config
from app.core.extensions import db
from app.core.models import PackageType, seed_demo_data
from app.registrations.catalog import PackageTerms
from app.registrations.domain import DocumentBundle, form18_slot
from app.registrations.workflow import apply, new_registration


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SECRET_KEY = "test-secret"
    UPLOAD_TIMEOUT_SECONDS = 5


ONE_TIME = PackageTerms(id="basic", name="Basic", type=PackageType.ONE_TIME, price=Decimal("45000.00"))
ADVANCE_BALANCE = PackageTerms(
    id="premium",
    name="Premium",
    type=PackageType.ADVANCE_BALANCE,
    price=Decimal("90000.00"),
    advance_amount=Decimal("50000.00"),
    balance_amount=Decimal("40000.00"),
)

CONTACT = {
    "company_name": "Lanka Spice Exports",
    "contact_person_name": "Nimal Perera",
    "contact_person_email": "nimal@example.lk",
    "contact_person_phone": "0771234567",
}

CASE_STEPS = (
    "payment-processing",
    "payment-approved",
    "details-submitted",
    "details-approved",
    "published",
    "customer-uploaded",
    "balance-approved",
    "acknowledged",
    "documents-approved",
    "documents-submitted",
    "completed",
)


def make_bundle(name: str = "document.pdf", signed: bool = False) -> DocumentBundle:
    return DocumentBundle(
        name=name,
        content_type="application/pdf",
        size=2048,
        storage_ref=f"1/{name}",
        url=f"/files/1/{name}",
        signed=signed,
    )


def company_payload(directors: int = 1, address_number: str = "12") -> dict:
    return {
        "company": {
            "company_name_english": "Lanka Spice Exports (Pvt) Ltd",
            "company_name_sinhala": "ලංකා ස්පයිස් එක්ස්පෝර්ට්ස්",
            "is_foreign_owned": "no",
            "business_address_number": address_number,
            "business_address_street": "Galle Road",
            "business_address_city": "Colombo 03",
            "postal_code": "00300",
            "share_price": "10",
            "make_simple_books_secretary": "yes",
            "import_export_status": "exports-only",
            "exports_to_add": "Cinnamon, pepper",
            "other_business_activities": "Spice processing",
            "grama_sevaka_division": "Kollupitiya",
            "business_email": "info@lankaspice.lk",
            "business_contact_number": "0112345678",
        },
        "shareholders": [
            {
                "id": f"holder-{index}",
                "full_name": f"Shareholder {index}",
                "nic_number": f"19900000{index}V",
                "email": f"holder{index}@example.lk",
                "contact_number": "0771234567",
                "shares": "50",
                "is_director": True,
                "documents": [make_bundle(f"nic-{index}.pdf").to_dict()],
            }
            for index in range(directors)
        ],
        "directors": [],
    }


def staff_documents(case) -> list[dict]:
    documents = [
        {"slot": "form1", "document": make_bundle("form1.pdf")},
        {"slot": "letterOfEngagement", "document": make_bundle("engagement.pdf")},
        {"slot": "aoa", "document": make_bundle("aoa.pdf")},
    ]
    documents += [
        {"slot": form18_slot(index), "document": make_bundle(f"form18-{index}.pdf")}
        for index in range(len(case.directors))
    ]
    return documents


def customer_documents(case) -> list[dict]:
    documents = [
        {"slot": item["slot"], "document": make_bundle(f"signed-{item['document'].name}", signed=True)}
        for item in staff_documents(case)
    ]
    if case.address_proof_required:
        documents.append({"slot": "addressProof", "document": make_bundle("utility-bill.pdf", signed=True)})
    documents += [
        {"slot": f"additional[{entry.id}]", "document": make_bundle(f"signed-{entry.title}.pdf", signed=True)}
        for entry in case.staff_documents.additional
    ]
    return documents


def build_case(until: str = "payment-processing", terms: PackageTerms = ONE_TIME, directors: int = 1, address_number: str = "12"):
    """Drive a case through the engine up to and including step ``until``."""
    if until not in CASE_STEPS:
        raise ValueError(f"unknown step {until}")
    case = new_registration(1, dict(CONTACT), terms, make_bundle("receipt.pdf")).case
    case.version = 1

    def step(name, current):
        if name == "payment-approved":
            return apply(current, "approve-payment", "staff", terms=terms).case
        if name == "details-submitted":
            payload = company_payload(directors, address_number)
            return apply(current, "submit-company-details", "applicant", payload, terms=terms).case
        if name == "details-approved":
            return apply(current, "approve-details", "staff", terms=terms).case
        if name == "published":
            payload = {"documents": staff_documents(current)}
            return apply(current, "publish-documents", "staff", payload, terms=terms).case
        if name == "customer-uploaded":
            payload = {"documents": customer_documents(current)}
            return apply(current, "upload-customer-document", "applicant", payload, terms=terms).case
        if name == "balance-approved":
            if not terms.is_advance_balance:
                return current
            submitted = apply(
                current,
                "submit-balance-payment",
                "applicant",
                {"receipt": make_bundle("balance.pdf")},
                terms=terms,
            ).case
            return apply(submitted, "approve-balance-payment", "staff", {"reviewer": "Admin"}, terms=terms).case
        if name == "acknowledged":
            return apply(current, "acknowledge-documents", "applicant", terms=terms).case
        if name == "documents-approved":
            return apply(current, "approve-documents", "staff", terms=terms).case
        if name == "documents-submitted":
            payload = {"documents": [{"slot": "incorporationCertificate", "document": make_bundle("certificate.pdf")}]}
            return apply(current, "submit-final-documents", "staff", payload, terms=terms).case
        return apply(current, "complete-registration", "staff", terms=terms).case

    for name in CASE_STEPS[1 : CASE_STEPS.index(until) + 1]:
        case = step(name, case)
    return case


@pytest.fixture
def case_builder():
    return build_case


@pytest.fixture
def bundle():
    return make_bundle


@pytest.fixture
def one_time():
    return ONE_TIME


@pytest.fixture
def advance_balance():
    return ADVANCE_BALANCE


@pytest.fixture
def company_details():
    return company_payload


@pytest.fixture
def staff_docs():
    return staff_documents


@pytest.fixture
def customer_docs():
    return customer_documents


@pytest.fixture
def app(tmp_path):
    class _Config(TestConfig):
        UPLOAD_FOLDER = str(tmp_path / "uploads")

    app = create_app(_Config)
    with app.app_context():
        db.create_all()
        seed_demo_data(db.session)
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login_staff(client):
    def _login():
        return client.post("/auth/login", json={"email": "admin@incorp.local", "password": "admin123"})

    return _login


@pytest.fixture
def login_applicant(client):
    def _login():
        return client.post("/auth/login", json={"email": "customer@incorp.local", "password": "customer123"})

    return _login
