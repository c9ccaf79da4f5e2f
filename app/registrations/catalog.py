from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select

from app.core.extensions import db
from app.core.models import Package, PackageType
from app.core.utils import money
from app.registrations.errors import PackageNotFound


@dataclass(frozen=True)
class PackageTerms:
    id: str
    name: str
    type: PackageType
    price: Decimal
    advance_amount: Decimal | None = None
    balance_amount: Decimal | None = None
    description: str = ""

    @property
    def is_advance_balance(self) -> bool:
        return self.type == PackageType.ADVANCE_BALANCE

    @classmethod
    def from_model(cls, package: Package) -> PackageTerms:
        advance_balance = package.type == PackageType.ADVANCE_BALANCE
        return cls(
            id=package.id,
            name=package.name,
            type=PackageType(package.type),
            price=Decimal(package.price),
            advance_amount=Decimal(package.advance_amount) if advance_balance else None,
            balance_amount=Decimal(package.balance_amount) if advance_balance else None,
            description=package.description or "",
        )

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "description": self.description,
            "price": str(self.price),
            "price_display": money(self.price),
        }
        if self.is_advance_balance:
            payload["advance_amount"] = str(self.advance_amount)
            payload["balance_amount"] = str(self.balance_amount)
        return payload


class SqlPackageCatalog:
    """Read-only package lookups for the workflow."""

    def __init__(self, session=None) -> None:
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def resolve(self, package_id: str) -> PackageTerms:
        package = self.session.get(Package, (package_id or "").strip())
        if package is None:
            raise PackageNotFound(package_id)
        return PackageTerms.from_model(package)

    def list_active(self) -> list[PackageTerms]:
        rows = self.session.execute(
            select(Package).where(Package.is_active.is_(True)).order_by(Package.price.asc(), Package.id.asc())
        ).scalars()
        return [PackageTerms.from_model(row) for row in rows]
