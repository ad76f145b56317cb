"""Collateral custody: the token interface the ledger moves value through.

The ledger never touches balances directly. It asks a CollateralTransferService to
pull collateral from a depositor (transfer_in) or push it back (transfer_out) and
only looks at whether the movement succeeded.

FungibleToken is an in-memory fungible token with the usual allowance model:
a holder approves a spender, then the spender may move up to that allowance
out of the holder's balance. TokenTransferService binds a token to the custodian
account that holds every deposit on the ledger's behalf."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Hashable
from dataclasses import dataclass, field
from typing import Protocol, TypeAlias

from loguru import logger

Account: TypeAlias = Hashable


class TokenError(Exception):
    """Token movement rejected; no balance changed."""


class InsufficientBalance(TokenError):
    pass


class InsufficientAllowance(TokenError):
    pass


class CollateralTransferService(Protocol):
    def transfer_in(self, frm: Account, amount: int) -> bool: ...

    def transfer_out(self, to: Account, amount: int) -> bool: ...


@dataclass(slots=True)
class FungibleToken:
    symbol: str = "USDC"
    decimals: int = 18

    balances: dict[Account, int] = field(default_factory=lambda: defaultdict(int))

    # (owner, spender) -> remaining allowance
    allowances: dict[tuple[Account, Account], int] = field(
        default_factory=lambda: defaultdict(int)
    )

    def mint(self, to: Account, amount: int) -> None:
        if amount < 0:
            raise ValueError("Cannot mint a negative amount")

        self.balances[to] += amount

    def balance_of(self, who: Account) -> int:
        return self.balances.get(who, 0)

    def allowance(self, owner: Account, spender: Account) -> int:
        return self.allowances.get((owner, spender), 0)

    def approve(self, owner: Account, spender: Account, amount: int) -> None:
        """Replace (not add to) the allowance of spender over owner's balance."""
        if amount < 0:
            raise ValueError("Cannot approve a negative amount")

        self.allowances[(owner, spender)] = amount

    def transfer(self, frm: Account, to: Account, amount: int) -> None:
        if amount < 0:
            raise ValueError("Cannot transfer a negative amount")

        if self.balance_of(frm) < amount:
            raise InsufficientBalance(
                f"{frm} holds {self.balance_of(frm)} {self.symbol}, needs {amount}"
            )

        self.balances[frm] -= amount
        self.balances[to] += amount

    def transfer_from(
        self, spender: Account, frm: Account, to: Account, amount: int
    ) -> None:
        """Move amount out of frm on behalf of spender, spending the allowance.

        Both checks run before either balance or allowance changes."""
        allowed = self.allowance(frm, spender)
        if allowed < amount:
            raise InsufficientAllowance(
                f"{spender} may move {allowed} {self.symbol} from {frm}, needs {amount}"
            )

        self.transfer(frm, to, amount)
        self.allowances[(frm, spender)] = allowed - amount


@dataclass(slots=True)
class TokenTransferService:
    """Adapter giving the ledger success/failure semantics over a FungibleToken."""

    token: FungibleToken

    # token account holding all deposited collateral; also the spender
    # depositors must approve before depositing
    custodian: Account

    def transfer_in(self, frm: Account, amount: int) -> bool:
        try:
            self.token.transfer_from(self.custodian, frm, self.custodian, amount)
        except TokenError as e:
            logger.warning("[{}] Pull of {} from {} failed: {}", self.token.symbol, amount, frm, e)
            return False

        return True

    def transfer_out(self, to: Account, amount: int) -> bool:
        try:
            self.token.transfer(self.custodian, to, amount)
        except TokenError as e:
            logger.warning("[{}] Push of {} to {} failed: {}", self.token.symbol, amount, to, e)
            return False

        return True

    def custodied(self) -> int:
        return self.token.balance_of(self.custodian)
