"""Tests for provider payload mapping."""

from flint.services.mappers import (
    map_order_status,
    map_position,
    map_snaptrade_account,
    map_teller_account,
    map_teller_transactions,
    position_symbol,
    to_float,
)


def test_to_float_handles_teller_strings_and_junk():
    assert to_float("12.50") == 12.5
    assert to_float(3) == 3.0
    assert to_float(None) is None
    assert to_float("") is None
    assert to_float("n/a") is None


class TestTeller:
    def test_checking_account(self, teller_account_payloads):
        checking, _ = teller_account_payloads
        doc = map_teller_account(checking, {"available": "1500.25", "ledger": "1600.00"})

        assert doc["provider"] == "teller"
        assert doc["externalAccountId"] == "acc_chk"
        assert doc["accountType"] == "bank"
        assert doc["institutionName"] == "Chase"
        assert doc["availableBalance"] == 1500.25
        assert doc["currentBalance"] == 1600.0
        assert doc["balance"] == 1500.25
        assert doc["isActive"] is True

    def test_credit_card_balance_is_current(self, teller_account_payloads):
        _, card = teller_account_payloads
        doc = map_teller_account(card, {"available": "3500.00", "ledger": "-450.32", "limit": "5000"})

        assert doc["accountType"] == "credit"
        assert doc["currentBalance"] == -450.32
        assert doc["balance"] == -450.32
        assert doc["creditLimit"] == 5000.0

    def test_no_balances(self, teller_account_payloads):
        checking, _ = teller_account_payloads
        doc = map_teller_account(checking)
        assert doc["availableBalance"] is None
        assert doc["balance"] == 0.0

    def test_transactions(self):
        out = map_teller_transactions([{
            "id": "txn_1", "description": "COFFEE", "amount": "-4.50", "status": "posted", "date": "2024-05-01",
            "details": {"category": "dining", "counterparty": {"name": "Blue Bottle"}},
        }])
        assert out == [{
            "id": "txn_1", "description": "COFFEE", "category": "dining", "counterparty": "Blue Bottle",
            "amount": -4.5, "status": "posted", "date": "2024-05-01",
        }]


class TestSnapTrade:
    def test_brokerage_account(self, snaptrade):
        raw = snaptrade.list_accounts("u", "s")[0]
        doc = map_snaptrade_account(raw)

        assert doc["provider"] == "snaptrade"
        assert doc["accountType"] == "investment"
        assert doc["balance"] == 12500.0
        assert doc["accountNumber"] == "0001"

    def test_crypto_exchange_detected(self):
        doc = map_snaptrade_account({"id": "x", "institution_name": "Coinbase", "balance": {"total": {"amount": 50}}})
        assert doc["accountType"] == "crypto"

    def test_position_pnl(self, snaptrade):
        pos = map_position(snaptrade.get_positions("u", "s", "stub-acct-1")[0])

        assert pos["symbol"] == "AAPL"
        assert pos["name"] == "Apple Inc."
        assert pos["marketValue"] == 2245.0
        assert pos["costBasis"] == 1800.0
        assert pos["unrealizedPnl"] == 445.0
        assert pos["unrealizedPnlPct"] == 24.72

    def test_position_without_cost_basis(self):
        pos = map_position({"symbol": "BTC", "units": 0.5, "price": 60000})
        assert pos["unrealizedPnlPct"] == 0.0
        assert pos["marketValue"] == 30000.0

    def test_symbol_unwrapping(self):
        assert position_symbol({"symbol": {"symbol": {"symbol": "msft"}}}) == "MSFT"
        assert position_symbol({"symbol": "spy"}) == "SPY"
        assert position_symbol({}) == "UNKNOWN"

    def test_order_status(self):
        assert map_order_status({"status": "EXECUTED"}) == "filled"
        assert map_order_status({"status": "canceled"}) == "cancelled"
        assert map_order_status({"status": "REJECTED"}) == "failed"
        assert map_order_status({"status": "OPEN"}) == "pending"
        assert map_order_status({}) == "pending"
