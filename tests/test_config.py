"""Tests for settings, the chain registry and observables."""

from decimal import Decimal

from walletwatch.chains import get_chain, get_partner_contracts, native_token_info
from walletwatch.config import Settings
from walletwatch.models import NATIVE_CONTRACT, AssignedToken, Ticker, TokenType, WalletBalance
from walletwatch.observable import Subscribable
from walletwatch.runner import format_balance, parse_chains

from conftest import USDT, WALLET, make_token


class TestSettings:
    """Tests for configuration."""

    def test_defaults(self):
        settings = Settings()
        assert settings.refresh_interval_seconds == 60.0
        assert not settings.auto_fetch_disabled

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("REFRESH_INTERVAL_SECONDS", "15")
        monkeypatch.setenv("AUTO_FETCH_DISABLED", "true")
        monkeypatch.setenv("EXTRA_PARTNER_CONTRACTS", '{"56": ["0xABC"]}')

        settings = Settings()

        assert settings.refresh_interval_seconds == 15.0
        assert settings.auto_fetch_disabled
        assert settings.extra_partner_contracts == {56: ["0xABC"]}

    def test_rpc_url_per_chain(self):
        settings = Settings(bsc_rpc_url="https://bsc.test")
        assert settings.get_rpc_url(56) == "https://bsc.test"
        assert settings.get_rpc_url(999) == ""

    def test_safe_dict_redacts_secrets(self):
        settings = Settings(
            database_url="postgresql+asyncpg://user:secret@db/walletwatch",
            etherscan_api_key="key",
        )
        safe = settings.get_safe_dict()

        assert "secret" not in safe["database_url"]
        assert safe["chains"][1]["api_key"] == "***"
        assert safe["chains"][56]["api_key"] == "(not set)"


class TestChains:
    """Tests for the chain registry."""

    def test_native_token_info(self):
        info = native_token_info(100)
        assert info["contract"] == NATIVE_CONTRACT
        assert info["symbol"] == "xDAI"

    def test_partner_contracts_lowercase_and_deduplicated(self):
        partners = get_partner_contracts(1, {1: [USDT.upper().replace("0X", "0x")], 56: ["0x1"]})

        assert USDT in partners
        assert partners.count(USDT) == 1
        assert all(p == p.lower() for p in partners)

    def test_chain_without_partners(self):
        assert get_partner_contracts(56) == []
        assert get_partner_contracts(56, {56: ["0xAB"]}) == ["0xab"]
        assert get_chain(999) is None


class TestSubscribable:
    """Tests for the observable value."""

    def test_new_subscriber_gets_current_value(self):
        observable = Subscribable(5)
        received = []
        observable.subscribe(received.append)
        assert received == [5]

    def test_empty_observable_does_not_call(self):
        observable = Subscribable()
        received = []
        observable.subscribe(received.append)
        assert received == []

    def test_cancel_and_failing_subscriber(self):
        observable = Subscribable()
        received = []

        def broken(value):
            raise RuntimeError("subscriber bug")

        observable.subscribe(broken)
        subscription = observable.subscribe(received.append)
        observable.value = 1
        subscription.cancel()
        observable.value = 2

        assert received == [1]
        assert observable.subscriber_count == 1


class TestRunnerFormatting:
    """Tests for CLI helpers."""

    def test_format_balance(self):
        native = make_token(
            contract=NATIVE_CONTRACT,
            symbol="ETH",
            decimals=18,
            value=str(10**18),
            token_type=TokenType.NATIVE,
        )
        balance = WalletBalance(
            WALLET,
            frozenset(
                {
                    AssignedToken(native, Ticker(Decimal("2000"))),
                    AssignedToken(make_token(value="1500000")),
                }
            ),
        )

        text = format_balance(balance)

        assert "1 ETH ($2000.00)" in text
        assert "1.5 USDT" in text
        assert "Total: $2000.00" in text

    def test_parse_chains(self):
        assert parse_chains("1,56") == [1, 56]
