"""
Change making for an overpaid sale.

When the customer hands over more than the total, change is returned through a
currency exchange posted against the shop's cash-on-hand accounts:

- Option A: change in SOS. The extra USD is exchanged USD->SOS at the sell rate.
- Option B: change in USD. The extra SOS is exchanged SOS->USD at the buy rate.

This module only builds intents; posting them belongs to the submission saga.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from .errors import (
    AccountResolutionError,
    AmbiguousTenderError,
    ExchangeNotApplicableError,
    NoOverpaymentError,
)
from .models import CashAccount, Rate
from .money import ZERO, format_sos, format_usd, round_sos, round_sos_step, rounding_direction
from .reconciliation import DualTender, Settlement, SingleTender, TenderState, Unpaid


CASH_ON_HAND = "CASH_ON_HAND"
DEFAULT_CASH_ACCOUNTS = {"USD": "Cash_USD", "SOS": "Cash_SOS"}

USD_TO_SOS = "USD2SOS"
SOS_TO_USD = "SOS2USD"


@dataclass(frozen=True)
class ChangeQuote:
    option: str
    change_currency: str
    change_amount: Decimal
    reduce_from_currency: str
    reduce_amount: Decimal
    exchange_direction: str
    exchange_amount: Decimal
    counter_rate: Decimal

    def to_dict(self) -> dict:
        return {
            "option": self.option,
            "change_currency": self.change_currency,
            "change_amount": self.change_amount,
            "reduce_from_currency": self.reduce_from_currency,
            "reduce_amount": self.reduce_amount,
            "exchange_direction": self.exchange_direction,
            "exchange_amount": self.exchange_amount,
            "counter_rate": self.counter_rate,
        }


@dataclass
class ExchangeIntent:
    option: str
    change_currency: str
    change_amount: Decimal
    reduce_from_currency: str
    reduce_amount: Decimal
    exchange_direction: str
    exchange_amount: Decimal
    counter_rate: Decimal
    accounting_rate: Decimal
    from_account: str
    to_account: str
    overpaid_usd: Decimal
    rate: Rate
    rounding_meta: Optional[dict] = None
    intent_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    consumed: bool = False

    def consume(self) -> None:
        if self.consumed:
            raise ExchangeNotApplicableError(f"exchange intent {self.intent_id} was already submitted")
        self.consumed = True

    def request_body(self, *, sale_id: Optional[str] = None, customer_id: Optional[str] = None) -> dict:
        # `from_method` is the pool the shop pays out of, `to_method` the pool it receives into.
        body = {
            "from_currency": self.reduce_from_currency,
            "counter_rate": self.counter_rate,
            "accounting_rate": self.accounting_rate,
            "from_method": self.from_account,
            "to_method": self.to_account,
            "amount": self.exchange_amount,
        }
        if self.rounding_meta:
            body["rounding_meta"] = self.rounding_meta
        if sale_id:
            body["sale_id"] = sale_id
        if customer_id:
            body["customer_id"] = customer_id
        return body

    def to_dict(self) -> dict:
        return {
            "intent_id": self.intent_id,
            "option": self.option,
            "change_currency": self.change_currency,
            "change_amount": self.change_amount,
            "reduce_from_currency": self.reduce_from_currency,
            "reduce_amount": self.reduce_amount,
            "exchange_direction": self.exchange_direction,
            "exchange_amount": self.exchange_amount,
            "counter_rate": self.counter_rate,
            "accounting_rate": self.accounting_rate,
            "from_account": self.from_account,
            "to_account": self.to_account,
            "overpaid_usd": self.overpaid_usd,
            "rounding_meta": self.rounding_meta,
            "consumed": self.consumed,
        }


def quote_change_in_sos(overpaid_usd: Decimal, rate: Rate) -> ChangeQuote:
    return ChangeQuote(
        option="A",
        change_currency="SOS",
        change_amount=round_sos(overpaid_usd * rate.sell),
        reduce_from_currency="USD",
        reduce_amount=overpaid_usd,
        exchange_direction=USD_TO_SOS,
        exchange_amount=overpaid_usd,
        counter_rate=rate.sell,
    )


def quote_change_in_usd(overpaid_usd: Decimal, rate: Rate) -> ChangeQuote:
    return ChangeQuote(
        option="B",
        change_currency="USD",
        change_amount=overpaid_usd,
        reduce_from_currency="SOS",
        reduce_amount=round_sos(overpaid_usd * rate.sell),
        exchange_direction=SOS_TO_USD,
        # SOS the shop takes in to hand out the owed USD at the buy rate.
        exchange_amount=round_sos(overpaid_usd * rate.buy),
        counter_rate=rate.buy,
    )


def change_options(settlement: Settlement) -> dict[str, ChangeQuote]:
    """Both options, always; empty when nothing was overpaid."""
    if settlement.overpaid_usd <= 0:
        return {}
    return {
        "A": quote_change_in_sos(settlement.overpaid_usd, settlement.rate),
        "B": quote_change_in_usd(settlement.overpaid_usd, settlement.rate),
    }


def _cash_accounts(accounts: Iterable[CashAccount]) -> list[CashAccount]:
    return [a for a in accounts if (a.account_type or "").strip().upper() == CASH_ON_HAND]


def resolve_cash_account(accounts: Iterable[CashAccount], currency: str) -> CashAccount:
    cur = currency.strip().upper()
    cash = _cash_accounts(accounts)
    suffixed = re.compile(rf"(^|[^A-Z]){cur}$", re.IGNORECASE)
    for acc in cash:
        if suffixed.search(acc.name.strip()):
            return acc
    default_name = DEFAULT_CASH_ACCOUNTS.get(cur, f"Cash_{cur}").lower()
    for acc in cash:
        if acc.name.strip().lower() == default_name:
            return acc
    for acc in cash:
        if cur.lower() in acc.name.lower():
            return acc
    raise AccountResolutionError(cur)


def _assert_reducible(tender: TenderState, quote: ChangeQuote) -> None:
    held = tender.usd_amount if quote.reduce_from_currency == "USD" else tender.sos_amount
    if quote.reduce_amount > held:
        raise ExchangeNotApplicableError(
            f"option {quote.option} needs {quote.reduce_amount} {quote.reduce_from_currency} "
            f"from the tender but only {held} was handed over"
        )


def resolve(
    option: str,
    settlement: Settlement,
    accounts: Sequence[CashAccount],
    *,
    round_mode: Optional[str] = None,
    round_step: Decimal = Decimal("1000"),
) -> ExchangeIntent:
    """
    Turn the operator's chosen option into an exchange intent.

    `round_mode` (nearest/up/down) rounds the SOS change of option A to a note step;
    the rounding is recorded in `rounding_meta` and never changes the posted exchange amount.
    """
    opt = (option or "").strip().upper()
    quotes = change_options(settlement)
    if not quotes:
        raise NoOverpaymentError("nothing was overpaid; no change is due")
    if opt not in quotes:
        raise ExchangeNotApplicableError(f"unknown change option {option!r}")
    quote = quotes[opt]
    _assert_reducible(settlement.tender, quote)

    usd_acc = resolve_cash_account(accounts, "USD")
    sos_acc = resolve_cash_account(accounts, "SOS")
    if quote.exchange_direction == USD_TO_SOS:
        from_acc, to_acc = sos_acc, usd_acc
    else:
        from_acc, to_acc = usd_acc, sos_acc

    change_amount = quote.change_amount
    rounding_meta = None
    if round_mode and quote.change_currency == "SOS":
        chosen = round_sos_step(quote.change_amount, round_mode, round_step)
        rounding_meta = {
            "mode": round_mode,
            "rate_used": quote.counter_rate,
            "base_needed_native": quote.change_amount,
            "chosen_target_native": chosen,
            "diff_native": abs(chosen - quote.change_amount),
            "direction": rounding_direction(quote.change_amount, chosen, paying_out=True),
        }
        change_amount = chosen

    return ExchangeIntent(
        option=quote.option,
        change_currency=quote.change_currency,
        change_amount=change_amount,
        reduce_from_currency=quote.reduce_from_currency,
        reduce_amount=quote.reduce_amount,
        exchange_direction=quote.exchange_direction,
        exchange_amount=quote.exchange_amount,
        counter_rate=quote.counter_rate,
        accounting_rate=settlement.rate.accounting,
        from_account=from_acc.name,
        to_account=to_acc.name,
        overpaid_usd=settlement.overpaid_usd,
        rate=settlement.rate,
        rounding_meta=rounding_meta,
    )


def option_for_shape(settlement: Settlement) -> str:
    shape = settlement.shape
    if isinstance(shape, SingleTender):
        return "A" if shape.currency == "USD" else "B"
    if isinstance(shape, DualTender):
        raise AmbiguousTenderError(
            "overpaid with both USD and SOS; choose which currency the change is taken from"
        )
    if isinstance(shape, Unpaid):
        raise NoOverpaymentError("nothing was tendered")
    raise TypeError(f"unhandled tender shape {shape!r}")


def resolve_for_tender(
    settlement: Settlement,
    accounts: Sequence[CashAccount],
    *,
    round_mode: Optional[str] = None,
    round_step: Decimal = Decimal("1000"),
) -> ExchangeIntent:
    if settlement.overpaid_usd <= 0:
        raise NoOverpaymentError("nothing was overpaid; no change is due")
    return resolve(
        option_for_shape(settlement),
        settlement,
        accounts,
        round_mode=round_mode,
        round_step=round_step,
    )


def adjusted_tender(tender: TenderState, intent: ExchangeIntent) -> TenderState:
    """The tender the sale records once the change has gone out through the exchange."""
    if intent.reduce_from_currency == "USD":
        if intent.reduce_amount > tender.usd_amount:
            raise ExchangeNotApplicableError("change exceeds the USD tendered")
        return TenderState(usd_amount=tender.usd_amount - intent.reduce_amount, sos_amount=tender.sos_amount)
    if intent.reduce_amount > tender.sos_amount:
        raise ExchangeNotApplicableError("change exceeds the SOS tendered")
    return TenderState(usd_amount=tender.usd_amount, sos_amount=max(ZERO, tender.sos_amount - intent.reduce_amount))


def preview_text(settlement: Settlement, quote: ChangeQuote) -> dict:
    if quote.change_currency == "SOS":
        line1 = (
            f"Customer paid ${format_usd(quote.reduce_amount)} extra, "
            f"and will receive {format_sos(quote.change_amount)} SOS back."
        )
    else:
        line1 = (
            f"Customer paid {format_sos(quote.reduce_amount)} SOS extra, "
            f"and will receive ${format_usd(quote.change_amount)} USD back."
        )
    return {
        "direction": "USD → SOS" if quote.exchange_direction == USD_TO_SOS else "SOS → USD",
        "rate_used": quote.counter_rate,
        "header": f"Extra detected: ${format_usd(settlement.overpaid_usd)}",
        "line1": line1,
        "totals": (
            f"Sale total: ${format_usd(settlement.total_usd)}   •   "
            f"Paid: ${format_usd(settlement.paid_usd_equivalent)}   •   "
            f"Extra: ${format_usd(settlement.overpaid_usd)}"
        ),
    }
