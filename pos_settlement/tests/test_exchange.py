from decimal import Decimal

import pytest

from pos_settlement.app.errors import (
    AccountResolutionError,
    AmbiguousTenderError,
    ExchangeNotApplicableError,
    NoOverpaymentError,
)
from pos_settlement.app.exchange import (
    SOS_TO_USD,
    USD_TO_SOS,
    adjusted_tender,
    change_options,
    preview_text,
    resolve,
    resolve_cash_account,
    resolve_for_tender,
)
from pos_settlement.app.models import CashAccount, Rate
from pos_settlement.app.reconciliation import TenderState, reconcile

RATE = Rate(accounting=Decimal("27000"), sell=Decimal("27000"), buy=Decimal("27500"))

ACCOUNTS = [
    CashAccount(id="1", name="Cash_USD", account_type="CASH_ON_HAND"),
    CashAccount(id="2", name="Cash_SOS", account_type="CASH_ON_HAND"),
    CashAccount(id="3", name="Bank_SOS", account_type="BANK"),
]


def _settle(usd="0", sos="0", total="10.00"):
    return reconcile(total, TenderState.from_raw(usd, sos), RATE)


def test_change_options_for_usd_overpay():
    opts = change_options(_settle(usd="12"))

    a = opts["A"]
    assert a.change_currency == "SOS"
    assert a.change_amount == Decimal("54000")
    assert a.reduce_from_currency == "USD"
    assert a.reduce_amount == Decimal("2.00")
    assert a.exchange_direction == USD_TO_SOS
    assert a.exchange_amount == Decimal("2.00")
    assert a.counter_rate == Decimal("27000")

    b = opts["B"]
    assert b.change_currency == "USD"
    assert b.change_amount == Decimal("2.00")
    assert b.reduce_amount == Decimal("54000")
    assert b.exchange_direction == SOS_TO_USD
    assert b.exchange_amount == Decimal("55000")
    assert b.counter_rate == Decimal("27500")


def test_no_options_without_overpay():
    assert change_options(_settle(usd="10")) == {}
    assert change_options(_settle(usd="3")) == {}


def test_resolve_option_a_routes_sos_out_and_usd_in():
    intent = resolve("a", _settle(usd="12"), ACCOUNTS)

    assert intent.option == "A"
    assert intent.from_account == "Cash_SOS"
    assert intent.to_account == "Cash_USD"
    assert intent.accounting_rate == Decimal("27000")
    assert intent.overpaid_usd == Decimal("2.00")
    assert intent.rounding_meta is None
    assert intent.request_body(customer_id="c-1") == {
        "from_currency": "USD",
        "counter_rate": Decimal("27000"),
        "accounting_rate": Decimal("27000"),
        "from_method": "Cash_SOS",
        "to_method": "Cash_USD",
        "amount": Decimal("2.00"),
        "customer_id": "c-1",
    }


def test_resolve_option_b_for_sos_overpay():
    s = _settle(sos="297000")
    intent = resolve_for_tender(s, ACCOUNTS)

    assert intent.option == "B"
    assert intent.change_currency == "USD"
    assert intent.change_amount == Decimal("1.00")
    assert intent.reduce_amount == Decimal("27000")
    assert intent.exchange_amount == Decimal("27500")
    assert intent.from_account == "Cash_USD"
    assert intent.to_account == "Cash_SOS"

    after = adjusted_tender(s.tender, intent)
    assert after.sos_amount == Decimal("270000")
    assert after.usd_amount == Decimal("0")


def test_adjusted_tender_for_option_a():
    s = _settle(usd="12")
    after = adjusted_tender(s.tender, resolve("A", s, ACCOUNTS))
    assert after.usd_amount == Decimal("10.00")


def test_option_that_exceeds_tendered_currency_is_rejected():
    # Only USD was handed over; there is no SOS to give back as the reduction.
    with pytest.raises(ExchangeNotApplicableError):
        resolve("B", _settle(usd="12"), ACCOUNTS)


def test_dual_tender_needs_explicit_option():
    s = _settle(usd="5", sos="150000")
    with pytest.raises(AmbiguousTenderError):
        resolve_for_tender(s, ACCOUNTS)

    intent = resolve("B", s, ACCOUNTS)
    assert intent.reduce_amount == Decimal("15120")
    assert intent.change_amount == Decimal("0.56")


def test_nothing_overpaid():
    with pytest.raises(NoOverpaymentError):
        resolve("A", _settle(usd="10"), ACCOUNTS)
    with pytest.raises(NoOverpaymentError):
        resolve_for_tender(_settle(usd="10"), ACCOUNTS)


def test_unknown_option():
    with pytest.raises(ExchangeNotApplicableError):
        resolve("C", _settle(usd="12"), ACCOUNTS)


def test_round_mode_rounds_sos_change_and_records_meta():
    intent = resolve("A", _settle(usd="10.50"), ACCOUNTS, round_mode="nearest")

    assert intent.change_amount == Decimal("14000")
    assert intent.exchange_amount == Decimal("0.50")
    assert intent.rounding_meta["base_needed_native"] == Decimal("13500")
    assert intent.rounding_meta["chosen_target_native"] == Decimal("14000")
    assert intent.rounding_meta["diff_native"] == Decimal("500")
    # Paying out more than owed is a loss for the shop.
    assert intent.rounding_meta["direction"] == "LOSS"
    assert intent.request_body()["rounding_meta"]["mode"] == "nearest"


def test_intent_can_only_be_consumed_once():
    intent = resolve("A", _settle(usd="12"), ACCOUNTS)
    intent.consume()
    with pytest.raises(ExchangeNotApplicableError):
        intent.consume()


def test_resolve_cash_account_matching():
    assert resolve_cash_account(ACCOUNTS, "usd").id == "1"
    assert resolve_cash_account(ACCOUNTS, "SOS").id == "2"

    drawer = [
        CashAccount(id="9", name="Till drawer SOS", account_type="cash_on_hand"),
        CashAccount(id="8", name="USDollars float", account_type="CASH_ON_HAND"),
    ]
    assert resolve_cash_account(drawer, "SOS").id == "9"
    assert resolve_cash_account(drawer, "USD").id == "8"


def test_missing_cash_account():
    with pytest.raises(AccountResolutionError) as exc:
        resolve("A", _settle(usd="12"), [ACCOUNTS[0], ACCOUNTS[2]])
    assert exc.value.currency == "SOS"


def test_preview_text():
    s = _settle(usd="12")
    opts = change_options(s)

    a = preview_text(s, opts["A"])
    assert a["direction"] == "USD → SOS"
    assert a["header"] == "Extra detected: $2.00"
    assert a["line1"] == "Customer paid $2.00 extra, and will receive 54,000 SOS back."

    b = preview_text(s, opts["B"])
    assert b["direction"] == "SOS → USD"
    assert b["line1"] == "Customer paid 54,000 SOS extra, and will receive $2.00 USD back."
    assert b["rate_used"] == Decimal("27500")
