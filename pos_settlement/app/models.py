from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from .money import to_decimal


def _on_hand(v):
    # Negative stock (backorders) is shown to the cashier as nothing on hand.
    d = to_decimal(v)
    return max(0, int(d))


def _lenient_money(v):
    return to_decimal(v)


def _blank_to_none(v):
    if v is None:
        return None
    if isinstance(v, str) and not v.strip():
        return None
    return v


OnHand = Annotated[int, BeforeValidator(_on_hand)]
LenientDecimal = Annotated[Decimal, BeforeValidator(_lenient_money)]
OptionalDate = Annotated[Optional[date], BeforeValidator(_blank_to_none)]


class Product(BaseModel):
    id: str
    name: str = ""
    sku: str = ""
    price_usd: LenientDecimal = Decimal("0")

    @property
    def display_name(self) -> str:
        return self.name or self.sku or self.id


class Lot(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_id: str
    store_id: str
    store_name: str = ""
    batch_number: str = ""
    expiry_date: OptionalDate = None
    on_hand: OnHand = 0

    def summary(self) -> str:
        parts = [self.store_name or self.store_id, self.batch_number or self.batch_id]
        if self.expiry_date:
            parts.append(f"exp {self.expiry_date.isoformat()}")
        parts.append(str(self.on_hand))
        return " • ".join(parts)


class Rate(BaseModel):
    """SOS per USD. `sell` converts USD->SOS, `buy` converts SOS->USD."""

    model_config = ConfigDict(frozen=True)

    accounting: Decimal = Field(gt=0)
    sell: Decimal = Field(gt=0)
    buy: Decimal = Field(gt=0)


class CashAccount(BaseModel):
    id: str
    name: str
    account_type: str = ""
