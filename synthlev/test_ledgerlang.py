import lark
import pytest

from synthlev.custody import FungibleToken, TokenTransferService
from synthlev.ledger import InvalidMultiplier, PositionLedger
from synthlev.ledgerlang import LedgerCommand, LedgerLang
from synthlev.units import parse_units

ll = LedgerLang()


def test_deposit_units():
    assert ll.parse("deposit 500") == [LedgerCommand("deposit", 500)]


def test_deposit_tokens():
    assert ll.parse("DEPOSIT 10 tokens") == [
        LedgerCommand("deposit", parse_units("10"))
    ]
    assert ll.parse("withdraw 0.5 tokens") == [
        LedgerCommand("withdraw", parse_units("0.5"))
    ]


def test_custom_decimals():
    assert LedgerLang(decimals=6).parse("deposit 1.25 tokens") == [
        LedgerCommand("deposit", 1_250_000)
    ]


def test_open():
    assert ll.parse("open 100") == [LedgerCommand("open", 100, True)]
    assert ll.parse("open 100 short") == [LedgerCommand("open", 100, False)]
    assert ll.parse("open all long") == [LedgerCommand("open", None, True)]
    assert ll.parse("open all short") == [LedgerCommand("open", None, False)]


def test_close():
    assert ll.parse("close 7") == [LedgerCommand("close", 7)]
    assert ll.parse("close all") == [LedgerCommand("close", None)]


def test_leverage_and_price():
    assert ll.parse("leverage up 3") == [LedgerCommand("leverage_up", 3)]
    assert ll.parse("Leverage Down 1") == [LedgerCommand("leverage_down", 1)]
    assert ll.parse("price 2000") == [LedgerCommand("price", 2000)]


def test_script():
    script = """
        # fund and open
        deposit 10 tokens; open all long
        leverage up 3   # more exposure on the next close

        close all
    """

    assert ll.parse(script) == [
        LedgerCommand("deposit", parse_units("10")),
        LedgerCommand("open", None, True),
        LedgerCommand("leverage_up", 3),
        LedgerCommand("close", None),
    ]


def test_empty():
    assert ll.parse("") == []
    assert ll.parse("  # nothing here\n;;") == []


def test_bad_input():
    with pytest.raises(lark.UnexpectedInput):
        ll.parse("deposit")

    with pytest.raises(lark.UnexpectedInput):
        ll.parse("leverage sideways 2")

    with pytest.raises(lark.UnexpectedInput):
        ll.parse("deposit 1.5")


def test_run():
    token = FungibleToken()
    token.mint("alice", parse_units("10"))
    token.approve("alice", "ledger", parse_units("10"))
    transfers = TokenTransferService(token, "ledger")

    with PositionLedger.temp("owner", transfers) as ledger:
        results = ll.run(
            ledger,
            "alice",
            "deposit 10 tokens; open all; leverage up 4; leverage down 1; close all",
        )

        assert len(results) == 5
        assert results[1].syntheticAmount == parse_units("10") * 2 // 1000
        assert ledger.account("alice").syntheticAmount == 0
        assert ledger.account("alice").collateral == 2 * parse_units("10")

        ll.run(ledger, "owner", "price 2000")
        assert ledger.synthetic_asset_price == 2000


def test_run_stops_at_first_error():
    token = FungibleToken()
    token.mint("bob", 10_000)
    token.approve("bob", "ledger", 10_000)
    transfers = TokenTransferService(token, "ledger")

    with PositionLedger.temp("owner", transfers) as ledger:
        with pytest.raises(InvalidMultiplier):
            ll.run(ledger, "bob", "deposit 10000; open 5000; leverage up 1; withdraw 5000")

        # commands before the failure stay committed, the ones after never ran
        bob = ledger.account("bob")
        assert bob.collateral == 5000
        assert bob.syntheticAmount == 10
        assert token.balance_of("bob") == 0


def test_parse_debug(capsys):
    got = ll.parseDebug("deposit 5; close all")
    assert got == [LedgerCommand("deposit", 5), LedgerCommand("close", None)]

    out = capsys.readouterr().out
    assert "Result as dict" in out
    assert "Result as class" in out
