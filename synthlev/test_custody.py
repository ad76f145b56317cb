import pytest

from synthlev.custody import (
    FungibleToken,
    InsufficientAllowance,
    InsufficientBalance,
    TokenTransferService,
)


def test_mint_and_transfer():
    t = FungibleToken()
    t.mint("a", 100)
    t.transfer("a", "b", 40)

    assert t.balance_of("a") == 60
    assert t.balance_of("b") == 40
    assert t.balance_of("nobody") == 0


def test_transfer_over_balance():
    t = FungibleToken()
    t.mint("a", 10)

    with pytest.raises(InsufficientBalance):
        t.transfer("a", "b", 11)

    assert t.balance_of("a") == 10
    assert t.balance_of("b") == 0


def test_transfer_from_spends_allowance():
    t = FungibleToken()
    t.mint("a", 100)
    t.approve("a", "spender", 30)

    t.transfer_from("spender", "a", "c", 20)
    assert t.balance_of("c") == 20
    assert t.allowance("a", "spender") == 10

    with pytest.raises(InsufficientAllowance):
        t.transfer_from("spender", "a", "c", 11)

    assert t.balance_of("a") == 80
    assert t.allowance("a", "spender") == 10


def test_transfer_from_over_balance_keeps_allowance():
    t = FungibleToken()
    t.mint("a", 5)
    t.approve("a", "spender", 50)

    with pytest.raises(InsufficientBalance):
        t.transfer_from("spender", "a", "c", 6)

    assert t.allowance("a", "spender") == 50
    assert t.balance_of("a") == 5


def test_approve_replaces():
    t = FungibleToken()
    t.approve("a", "s", 10)
    t.approve("a", "s", 3)
    assert t.allowance("a", "s") == 3

    with pytest.raises(ValueError):
        t.approve("a", "s", -1)


def test_service_reports_failure():
    t = FungibleToken()
    svc = TokenTransferService(t, "custody")
    t.mint("a", 10)

    # no approval yet
    assert not svc.transfer_in("a", 5)
    assert svc.custodied() == 0

    t.approve("a", "custody", 10)
    assert svc.transfer_in("a", 5)
    assert svc.custodied() == 5

    assert svc.transfer_out("b", 5)
    assert not svc.transfer_out("b", 1)
    assert t.balance_of("b") == 5
    assert svc.custodied() == 0
