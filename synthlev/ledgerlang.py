"""ledgerlang scripts ledger operations for one account.

    deposit 10 tokens
    open all long       # all free collateral
    leverage up 3; close all
    withdraw 5000000000000000000

Amounts are smallest-unit integers unless followed by 'tokens', which scales
them by the language's token decimals. Commands are separated by newlines or ';'
and anything after '#' on a line is ignored."""

import dataclasses
from dataclasses import dataclass
from typing import Literal

from lark import Lark, Transformer, v_args

# debug printing helper (formats dataclasses properly)
import prettyprinter as pp  # type: ignore

from synthlev.ledger import Account, AccountPosition, PositionLedger
from synthlev.units import DEFAULT_DECIMALS, parse_units

pp.install_extras(["dataclasses"], warn_on_error=False)

Op = Literal[
    "deposit",
    "withdraw",
    "open",
    "close",
    "leverage_up",
    "leverage_down",
    "price",
]


@dataclass
class LedgerCommand:
    """One parsed ledger operation.

    'amount' of None means "all": all free collateral for 'open',
    the whole synthetic amount for 'close'."""

    op: Op
    amount: int | None = None
    isLong: bool = True

    def resolve(self, ledger: PositionLedger, caller: Account) -> int:
        if self.amount is not None:
            return self.amount

        current = ledger.account(caller)
        if self.op == "open":
            return current.collateral

        return current.syntheticAmount

    def apply(
        self, ledger: PositionLedger, caller: Account
    ) -> AccountPosition | None:
        """Run against 'ledger' as 'caller'. Ledger errors propagate unchanged."""
        match self.op:
            case "deposit":
                return ledger.deposit(caller, self.resolve(ledger, caller))
            case "withdraw":
                return ledger.withdraw(caller, self.resolve(ledger, caller))
            case "open":
                return ledger.open_position(
                    caller, self.resolve(ledger, caller), self.isLong
                )
            case "close":
                return ledger.close_position(caller, self.resolve(ledger, caller))
            case "leverage_up":
                return ledger.increase_leverage(caller, self.resolve(ledger, caller))
            case "leverage_down":
                return ledger.decrease_leverage(caller, self.resolve(ledger, caller))
            case "price":
                ledger.set_synthetic_asset_price(caller, self.resolve(ledger, caller))
                return None

        raise ValueError(f"Unknown ledger operation: {self.op}")


lang = r"""
    cmd: deposit | withdraw | open | close | leverage_up | leverage_down | price

    deposit: "deposit"i amount
    withdraw: "withdraw"i amount
    open: "open"i (amount | all) side?
    close: "close"i (amount | all)
    leverage_up: "leverage"i "up"i INT
    leverage_down: "leverage"i "down"i INT
    price: "price"i INT

    // raw smallest units, or whole tokens scaled by decimals
    amount: INT -> units
          | (INT | DECIMAL) "tokens"i -> whole

    all: "all"i

    side: long | short
    long: "long"i
    short: "short"i

    DECIMAL.2: /[0-9]+\.[0-9]+/
    INT: /[0-9]+/

    WHITESPACE: (" " | "\t")+
    %ignore WHITESPACE
"""


class TreeToCommand(Transformer):
    def __init__(self, decimals: int):
        super().__init__()
        self.decimals = decimals

    @v_args(inline=True)
    def cmd(self, got):
        return got

    @v_args(inline=True)
    def deposit(self, amount):
        return LedgerCommand("deposit", amount)

    @v_args(inline=True)
    def withdraw(self, amount):
        return LedgerCommand("withdraw", amount)

    def open(self, got):
        # side is optional and defaults to long
        isLong = got[1] if len(got) > 1 else True
        return LedgerCommand("open", got[0], isLong)

    @v_args(inline=True)
    def close(self, amount):
        return LedgerCommand("close", amount)

    @v_args(inline=True)
    def leverage_up(self, got):
        return LedgerCommand("leverage_up", int(got))

    @v_args(inline=True)
    def leverage_down(self, got):
        return LedgerCommand("leverage_down", int(got))

    @v_args(inline=True)
    def price(self, got):
        return LedgerCommand("price", int(got))

    @v_args(inline=True)
    def units(self, got):
        return int(got)

    @v_args(inline=True)
    def whole(self, got):
        return parse_units(str(got), self.decimals)

    def all(self, _):
        return None

    @v_args(inline=True)
    def side(self, got):
        return got

    def long(self, _):
        return True

    def short(self, _):
        return False


@dataclass
class LedgerLang:
    decimals: int = DEFAULT_DECIMALS

    def __post_init__(self):
        self.parser = Lark(
            lang, start="cmd", parser="lalr", transformer=TreeToCommand(self.decimals)
        )

    def parse(self, text: str) -> list[LedgerCommand]:
        """Parse 'text' into ledger commands in order.

        On error, throws the raw lark.UnexpectedInput exception describing
        where the problem occurred and what was expected instead. Whole-token
        amounts finer than one smallest unit raise ValueError."""
        commands = []
        for line in text.splitlines():
            line = line.split("#", 1)[0]
            for statement in line.split(";"):
                # the parser doesn't like surrounding whitespace
                if statement := statement.strip():
                    commands.append(self.parser.parse(statement))

        return commands

    def parseDebug(self, text: str) -> list[LedgerCommand]:
        """Parse like .parse() but also print the created commands to stdout
        as both their dictionary form and their dataclass form."""
        parsed = self.parse(text)

        print("\tResult", "as dict:")
        pp.cpprint([dataclasses.asdict(p) for p in parsed])
        print("\n\tResult", "as class:")
        pp.cpprint(parsed)

        return parsed

    def run(
        self, ledger: PositionLedger, caller: Account, text: str
    ) -> list[AccountPosition | None]:
        """Parse everything first, then apply commands in order.

        Each command is its own all-or-nothing ledger call: if one fails, the
        ones before it stay committed and the error propagates."""
        return [command.apply(ledger, caller) for command in self.parse(text)]
