from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from flask_login import UserMixin
from sqlalchemy import CheckConstraint, Enum as SAEnum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
from werkzeug.security import generate_password_hash

from app.core.extensions import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    STAFF = "staff"
    APPLICANT = "applicant"


class RegistrationStage(str, Enum):
    CONTACT_PAYMENT = "contact-payment"
    COMPANY_DETAILS = "company-details"
    DOCUMENTATION = "documentation"
    INCORPORATION = "incorporation"


class RegistrationStatus(str, Enum):
    PAYMENT_PROCESSING = "payment-processing"
    PAYMENT_REJECTED = "payment-rejected"
    DOCUMENTATION_PROCESSING = "documentation-processing"
    DOCUMENTS_PUBLISHED = "documents-published"
    INCORPORATION_PROCESSING = "incorporation-processing"
    DOCUMENTS_SUBMITTED = "documents-submitted"
    COMPLETED = "completed"


class BalancePaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PackageType(str, Enum):
    ONE_TIME = "one-time"
    ADVANCE_BALANCE = "advance-balance"


class User(UserMixin, db.Model):
    __tablename__ = "user_account"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(db.String(255), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    password_hash: Mapped[str] = mapped_column(db.String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        SAEnum(UserRole, name="user_role", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=UserRole.APPLICANT,
    )
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    registrations = relationship("Registration", back_populates="applicant")

    @property
    def is_staff(self) -> bool:
        return self.role == UserRole.STAFF


class Package(db.Model):
    __tablename__ = "package"
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_package_price"),
        CheckConstraint("advance_amount >= 0 AND balance_amount >= 0", name="ck_package_split"),
    )

    id: Mapped[str] = mapped_column(db.String(50), primary_key=True)
    name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    description: Mapped[str] = mapped_column(db.String(500), nullable=False, default="")
    type: Mapped[PackageType] = mapped_column(
        SAEnum(PackageType, name="package_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=PackageType.ONE_TIME,
    )
    price: Mapped[Decimal] = mapped_column(db.Numeric(10, 2), nullable=False)
    advance_amount: Mapped[Decimal] = mapped_column(db.Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    balance_amount: Mapped[Decimal] = mapped_column(db.Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    @validates("advance_amount", "balance_amount")
    def validate_split(self, key, value):
        # Advance+balance plans must split into two payable parts
        if self.type == PackageType.ADVANCE_BALANCE and value is not None and Decimal(value) <= 0:
            raise ValueError(f"{key} must be positive for advance-balance packages")
        return value


class Registration(db.Model):
    __tablename__ = "registration"
    __table_args__ = (
        Index("ix_registration_status_updated", "status", "updated_at"),
        Index("ix_registration_applicant_created", "applicant_user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(db.String(32), primary_key=True)
    applicant_user_id: Mapped[int] = mapped_column(ForeignKey("user_account.id"), nullable=False)
    package_id: Mapped[str] = mapped_column(ForeignKey("package.id"), nullable=False)
    company_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    status: Mapped[str] = mapped_column(db.String(40), nullable=False)
    stage: Mapped[str] = mapped_column(db.String(40), nullable=False)
    version: Mapped[int] = mapped_column(nullable=False, default=1)
    data: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    applicant = relationship("User", back_populates="registrations")
    package = relationship("Package")


def seed_demo_data(session) -> None:
    staff = User(
        email="admin@incorp.local",
        full_name="Registration Admin",
        password_hash=generate_password_hash("admin123"),
        role=UserRole.STAFF,
    )
    applicant = User(
        email="customer@incorp.local",
        full_name="Nimal Perera",
        password_hash=generate_password_hash("customer123"),
        role=UserRole.APPLICANT,
    )
    session.add_all([staff, applicant])

    session.add_all(
        [
            Package(
                id="basic",
                name="Basic",
                description="Private limited company registration, single payment",
                type=PackageType.ONE_TIME,
                price=Decimal("45000.00"),
            ),
            Package(
                id="premium",
                name="Premium",
                description="Registration with secretarial services, advance and balance",
                type=PackageType.ADVANCE_BALANCE,
                price=Decimal("90000.00"),
                advance_amount=Decimal("50000.00"),
                balance_amount=Decimal("40000.00"),
            ),
        ]
    )
    session.commit()
