"""Track collateral and leveraged synthetic exposure per account.

Each account deposits a collateral token, then converts some of that free collateral
into a synthetic position sized by leverage and the current synthetic asset price.
Closing converts synthetic exposure back into free collateral which can then be withdrawn.

Amounts are integers in the collateral token's smallest unit. Prices and leverage are
plain integers too, so every conversion is floor division:

    open:   synthetic  = collateral * leverage // price
    close:  collateral = synthetic  * price    // leverage

Opening a tiny amount against a large price therefore derives zero synthetic exposure,
which we reject instead of silently eating the collateral.

ACCOUNT LIFECYCLE:
=================

    Idle (syntheticAmount == 0)
      -> open_position -> Open (syntheticAmount > 0)
           -> increase_leverage / decrease_leverage (stays Open)
           -> close_position partial (stays Open)
           -> close_position full -> Idle

Leverage is stored prospectively: changing it never recomputes the synthetic amount
already held. It only changes how much collateral a later close returns.

CONSISTENCY RULES:
=================

1. Every operation is all-or-nothing. A record is computed in full, then committed
   by replacing the stored record. Records are frozen and never edited in place.
2. Collateral moves through the CollateralTransferService:
   - deposit pulls first and only credits after the pull succeeds
   - withdraw debits and commits first, then pushes, crediting the amount
     back if the push fails
3. Each account has its own lock held for the whole operation (transfer included).
   The price has its own lock. open/close read whatever price is current when they
   run; an owner price update racing with them is not a bug.

Usage:

    token = FungibleToken()
    transfers = TokenTransferService(token, custodian="ledger")

    with PositionLedger.temp(owner="admin", transfers=transfers) as ledger:
        token.mint("alice", parse_units("10"))
        token.approve("alice", "ledger", parse_units("10"))

        ledger.deposit("alice", parse_units("10"))
        ledger.open_position("alice", parse_units("10"), is_long=True)
        ledger.increase_leverage("alice", 3)
        ledger.close_position("alice", ledger.account("alice").syntheticAmount)
        print(ledger.position_table())
"""

from __future__ import annotations

import dataclasses
import threading
from collections.abc import Hashable, Iterator, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Literal, TypeAlias

from loguru import logger
from mutil.dualcache import DualCache

from synthlev.config import LedgerConfig
from synthlev.custody import CollateralTransferService
from synthlev.units import DEFAULT_DECIMALS, tokens

# Accounts can be anything hashable: an address string, a user id, a full identity object.
Account: TypeAlias = Hashable

# smallest-unit token amounts, synthetic quantities, and prices are all plain integers
Amount: TypeAlias = int
Price: TypeAlias = int
Leverage: TypeAlias = int

# key of the synthetic asset price inside the metadata cache
PRICE_KEY = "syntheticAssetPrice"


def whole(value) -> bool:
    """True for plain integers (bool is an int subclass but never an amount)"""
    return isinstance(value, int) and not isinstance(value, bool)


class LedgerError(Exception):
    """Base of every rejected ledger operation. Nothing was committed."""

    code = "ERR_LEDGER"

    def __init__(self, message: str = ""):
        super().__init__(f"{self.code}: {message}" if message else self.code)


class InvalidAmount(LedgerError):
    code = "ERR_0_AMOUNT"


class InvalidWithdrawAmount(LedgerError):
    code = "ERR_INVALID_WITHDRAW_AMOUNT"


class InvalidCollateralAmount(LedgerError):
    code = "ERR_INVALID_COLLATERAL_AMOUNT"


class PositionAlreadyOpen(InvalidCollateralAmount):
    code = "ERR_POSITION_ALREADY_OPEN"


class InvalidSyntheticAssetAmount(LedgerError):
    code = "ERR_INVALID_SYNTHETIC_ASSET_AMOUNT"


class InvalidMultiplier(LedgerError):
    code = "ERR_INVALID_MULTIPLIER"


class Unauthorized(LedgerError):
    code = "ERR_UNAUTHORIZED"


class TransferFailed(LedgerError):
    code = "ERR_TRANSFER_FAILED"


@dataclass(slots=True, frozen=True)
class AccountPosition:
    """Collateral and synthetic exposure of one account.

    - collateral: free collateral available to withdraw or open against
    - syntheticAmount: open exposure; zero means no open position
    - leverage: multiplier of the open position (retained after close)
    - isLong: direction recorded when opening; not used in any math
    """

    collateral: Amount = 0
    syntheticAmount: Amount = 0
    leverage: Leverage = 1
    isLong: bool = True

    @property
    def is_open(self) -> bool:
        return self.syntheticAmount > 0

    @property
    def empty(self) -> bool:
        return self.collateral == 0 and self.syntheticAmount == 0

    def violations(self) -> list[str]:
        found = []
        if self.collateral < 0:
            found.append(f"negative collateral {self.collateral}")

        if self.syntheticAmount < 0:
            found.append(f"negative synthetic amount {self.syntheticAmount}")

        if self.leverage < 1:
            found.append(f"leverage {self.leverage} below 1")

        return found


@dataclass
class LedgerHealthReport:
    """Invariant check across every stored account.

    errors are broken invariants on stored records (should never happen).
    warnings are solvency concerns, like custodied collateral not covering
    everything accounts could withdraw right now.
    """

    status: Literal["healthy", "warnings", "errors"]
    total_accounts: int
    open_positions: int
    total_collateral: Amount
    total_synthetic: Amount
    warnings: list[str]
    errors: list[str]


@dataclass(slots=True)
class PositionLedger:
    """Per-account collateral custody and leveraged synthetic positions.

    The ledger persists accounts (and the price) across restarts in namespaced
    on-disk caches, so you can reopen the same namespace and continue where you left off.
    """

    namespace: str
    owner: Account
    transfers: CollateralTransferService

    default_leverage: Leverage = 2

    # seeds the synthetic asset price until the owner sets a new one
    price_scale: Price = 1000

    cache_prefix: str = "./ledger-"

    positions: MutableMapping[Account, AccountPosition] = field(init=False)
    meta: MutableMapping[str, Price] = field(init=False)

    _guard: threading.Lock = field(init=False, default_factory=threading.Lock)
    # account -> [lock, holders and waiters]; dropped once nobody references it
    _locks: dict[Account, list] = field(init=False, default_factory=dict)
    _price_lock: threading.RLock = field(init=False, default_factory=threading.RLock)

    def __post_init__(self):
        if self.default_leverage < 1:
            raise ValueError(f"Default leverage must be at least 1: {self.default_leverage}")

        if self.price_scale < 0:
            raise ValueError(f"Price scale must not be negative: {self.price_scale}")

        self.namespace = self.namespace.replace(" ", "-").title()
        self.positions = DualCache(  # type: ignore[assignment]
            cacheName=self.namespace, cachePrefix=f"{self.cache_prefix}positions-"
        )
        self.meta = DualCache(  # type: ignore[assignment]
            cacheName=self.namespace, cachePrefix=f"{self.cache_prefix}meta-"
        )

        if PRICE_KEY not in self.meta:
            self.meta[PRICE_KEY] = self.price_scale

    @classmethod
    def from_config(
        cls,
        namespace: str,
        owner: Account,
        transfers: CollateralTransferService,
        config: LedgerConfig | None = None,
    ) -> PositionLedger:
        if config is None:
            config = LedgerConfig.from_env()

        return cls(
            namespace,
            owner,
            transfers,
            default_leverage=config.default_leverage,
            price_scale=config.price_scale,
            cache_prefix=config.cache_prefix,
        )

    @classmethod
    @contextmanager
    def temp(
        cls,
        owner: Account,
        transfers: CollateralTransferService,
        name: str | None = None,
        keep=False,
        **kwargs,
    ):
        """Create a uniquely namespaced test instance then delete when complete"""
        import random

        if not name:
            name = f"Test Ledger {random.randint(0, 200_000)}"

        created = cls(name, owner, transfers, **kwargs)
        try:
            yield created
        finally:
            if not keep:
                created.positions.destroy()  # type: ignore[attr-defined]
                created.meta.destroy()  # type: ignore[attr-defined]

    def clear(self) -> None:
        """Remove all accounts and reset the price to its construction-time scale"""
        self.positions.clear()
        self.meta[PRICE_KEY] = self.price_scale

    @contextmanager
    def _locked(self, who: Account):
        with self._guard:
            entry = self._locks.get(who)
            if entry is None:
                entry = self._locks[who] = [threading.RLock(), 0]

            entry[1] += 1

        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[who]

    def _commit(self, who: Account, record: AccountPosition) -> None:
        """Store the complete replacement record (or drop it once fully drained)."""
        if record.empty:
            if who in self.positions:
                del self.positions[who]
        else:
            self.positions[who] = record

    # ==========================================================================
    # QUERIES
    # ==========================================================================

    def account(self, who: Account) -> AccountPosition:
        """Current record for 'who', or a fresh zero record if never seen (not stored)."""
        if (record := self.positions.get(who)) is not None:
            return record

        return AccountPosition(leverage=self.default_leverage)

    def accounts(self) -> Iterator[tuple[Account, AccountPosition]]:
        yield from self.positions.items()

    @property
    def synthetic_asset_price(self) -> Price:
        with self._price_lock:
            return self.meta[PRICE_KEY]

    def is_owner(self, who: Account) -> bool:
        return who == self.owner

    # ==========================================================================
    # COLLATERAL CUSTODY
    # ==========================================================================

    def deposit(self, caller: Account, amount: Amount) -> AccountPosition:
        if not whole(amount) or amount <= 0:
            raise InvalidAmount(f"Deposit must be a positive integer, got {amount!r}")

        with self._locked(caller):
            if not self.transfers.transfer_in(caller, amount):
                logger.warning("[{}] Deposit of {} not received", caller, amount)
                raise TransferFailed(f"Could not pull {amount} from {caller}")

            # read after the pull so anything committed during it is kept
            current = self.account(caller)
            updated = dataclasses.replace(current, collateral=current.collateral + amount)
            self._commit(caller, updated)

        logger.info("[{}] Deposited {}: {}", caller, amount, updated)
        return updated

    def withdraw(self, caller: Account, amount: Amount) -> AccountPosition:
        with self._locked(caller):
            current = self.account(caller)

            if not whole(amount) or amount <= 0 or amount > current.collateral:
                raise InvalidWithdrawAmount(
                    f"Requested {amount!r} but {caller} has {current.collateral} free collateral"
                )

            # debit lands before the push so a re-entrant withdraw can't spend it twice
            self._commit(
                caller, dataclasses.replace(current, collateral=current.collateral - amount)
            )

            if not self.transfers.transfer_out(caller, amount):
                # credit back only this withdraw; anything committed during the push stays
                latest = self.account(caller)
                restored = dataclasses.replace(latest, collateral=latest.collateral + amount)
                self._commit(caller, restored)
                logger.error(
                    "[{}] Withdraw of {} failed to send, restored {}", caller, amount, restored
                )
                raise TransferFailed(f"Could not push {amount} to {caller}")

            updated = self.account(caller)

        logger.info("[{}] Withdrew {}: {}", caller, amount, updated)
        return updated

    # ==========================================================================
    # POSITIONS
    # ==========================================================================

    def synthetic_for(self, collateral: Amount, leverage: Leverage, price: Price) -> Amount:
        """Synthetic exposure bought by 'collateral' at 'leverage' (rounds down)."""
        if price <= 0:
            return 0

        return collateral * leverage // price

    def collateral_for(self, synthetic: Amount, leverage: Leverage, price: Price) -> Amount:
        """Collateral returned for closing 'synthetic' exposure held at 'leverage'."""
        return synthetic * price // leverage

    def open_position(
        self, caller: Account, collateral_amount: Amount, is_long: bool = True
    ) -> AccountPosition:
        with self._locked(caller):
            current = self.account(caller)

            if (
                not whole(collateral_amount)
                or collateral_amount <= 0
                or collateral_amount > current.collateral
            ):
                raise InvalidCollateralAmount(
                    f"Requested {collateral_amount} but {caller} has {current.collateral} free collateral"
                )

            if current.is_open:
                raise PositionAlreadyOpen(
                    f"{caller} already holds {current.syntheticAmount} synthetic; close it first"
                )

            price = self.synthetic_asset_price
            synthetic = self.synthetic_for(collateral_amount, self.default_leverage, price)
            if synthetic == 0:
                raise InvalidSyntheticAssetAmount(
                    f"{collateral_amount} collateral at {self.default_leverage}x and price {price} is zero exposure"
                )

            updated = AccountPosition(
                collateral=current.collateral - collateral_amount,
                syntheticAmount=synthetic,
                leverage=self.default_leverage,
                isLong=is_long,
            )
            self._commit(caller, updated)

        logger.info(
            "[{}] Opened {} {} for {} collateral at price {}: {}",
            caller,
            "LONG" if is_long else "SHORT",
            synthetic,
            collateral_amount,
            price,
            updated,
        )
        return updated

    def close_position(self, caller: Account, synthetic_amount: Amount) -> AccountPosition:
        with self._locked(caller):
            current = self.account(caller)

            if (
                not whole(synthetic_amount)
                or synthetic_amount <= 0
                or synthetic_amount > current.syntheticAmount
            ):
                raise InvalidSyntheticAssetAmount(
                    f"Requested close of {synthetic_amount} but {caller} holds {current.syntheticAmount}"
                )

            price = self.synthetic_asset_price
            returned = self.collateral_for(synthetic_amount, current.leverage, price)

            updated = dataclasses.replace(
                current,
                collateral=current.collateral + returned,
                syntheticAmount=current.syntheticAmount - synthetic_amount,
            )
            self._commit(caller, updated)

        logger.info(
            "[{}] Closed {} synthetic at price {} for {} collateral: {}",
            caller,
            synthetic_amount,
            price,
            returned,
            updated,
        )
        return updated

    def _set_leverage(
        self, caller: Account, new_leverage: Leverage, direction: Literal["up", "down"]
    ) -> AccountPosition:
        with self._locked(caller):
            current = self.account(caller)

            if not current.is_open:
                raise InvalidSyntheticAssetAmount(
                    f"{caller} has no open position to change leverage on"
                )

            if not whole(new_leverage):
                valid = False
            elif direction == "up":
                valid = new_leverage > current.leverage
            else:
                valid = 1 <= new_leverage < current.leverage

            if not valid:
                raise InvalidMultiplier(
                    f"Cannot move leverage {direction} from {current.leverage} to {new_leverage}"
                )

            updated = dataclasses.replace(current, leverage=new_leverage)
            self._commit(caller, updated)

        logger.info(
            "[{}] Leverage {} -> {}: {}", caller, current.leverage, new_leverage, updated
        )
        return updated

    def increase_leverage(self, caller: Account, new_leverage: Leverage) -> AccountPosition:
        return self._set_leverage(caller, new_leverage, "up")

    def decrease_leverage(self, caller: Account, new_leverage: Leverage) -> AccountPosition:
        return self._set_leverage(caller, new_leverage, "down")

    # ==========================================================================
    # PRICE
    # ==========================================================================

    def set_synthetic_asset_price(self, caller: Account, new_price: Price) -> None:
        if not self.is_owner(caller):
            logger.warning("[{}] Rejected price update to {} (not owner)", caller, new_price)
            raise Unauthorized(f"{caller} may not set the synthetic asset price")

        if not whole(new_price) or new_price < 0:
            raise InvalidAmount(f"Price must be a non-negative integer, got {new_price!r}")

        with self._price_lock:
            previous = self.meta[PRICE_KEY]
            self.meta[PRICE_KEY] = new_price

        logger.info("Synthetic asset price {} -> {}", previous, new_price)

    # ==========================================================================
    # DIAGNOSTICS AND REPORTING
    # ==========================================================================

    def health_check(self, custodied: Amount | None = None) -> LedgerHealthReport:
        """Check stored records against the account invariants.

        If 'custodied' (the custodian's token balance) is provided, also warn
        when it can't cover all free collateral. That happens legitimately when
        positions close at a higher price than they opened at, so it's a warning
        and not an error."""
        errors = []
        warnings = []
        total_collateral = 0
        total_synthetic = 0
        open_positions = 0
        total_accounts = 0

        for who, record in self.accounts():
            total_accounts += 1
            total_collateral += record.collateral
            total_synthetic += record.syntheticAmount
            open_positions += record.is_open
            errors.extend(f"{who}: {v}" for v in record.violations())

        price = self.synthetic_asset_price
        if price == 0 and open_positions:
            warnings.append(f"Price is zero with {open_positions} open positions")

        if custodied is not None and custodied < total_collateral:
            warnings.append(
                f"Custodied {custodied} does not cover free collateral {total_collateral}"
            )

        if errors:
            status: Literal["healthy", "warnings", "errors"] = "errors"
        elif warnings:
            status = "warnings"
        else:
            status = "healthy"

        return LedgerHealthReport(
            status=status,
            total_accounts=total_accounts,
            open_positions=open_positions,
            total_collateral=total_collateral,
            total_synthetic=total_synthetic,
            warnings=warnings,
            errors=errors,
        )

    def position_table(self, decimals: int = DEFAULT_DECIMALS) -> str:
        """Formatted table of every stored account."""
        header = f"{'Account':<20} {'Collateral':>24} {'Synthetic':>24} {'Lev':>5} {'Side':>6}"
        lines = [
            f"SYNTHETIC ASSET PRICE: {self.synthetic_asset_price}",
            header,
            "-" * len(header),
        ]

        for who, record in sorted(self.accounts(), key=lambda x: str(x[0])):
            side = ("LONG" if record.isLong else "SHORT") if record.is_open else "-"
            lines.append(
                f"{str(who):<20} {tokens(record.collateral, decimals):>24} "
                f"{record.syntheticAmount:>24,} {record.leverage:>5} {side:>6}"
            )

        if len(lines) == 3:
            lines.append("(no accounts)")

        return "\n".join(lines)
