import os
from dataclasses import dataclass

from dotenv import dotenv_values

from synthlev.units import DEFAULT_DECIMALS

# environment wins over the local dotfile
CONFIG = {**dotenv_values(".env.synthlev"), **os.environ}


def _int_setting(config, name: str, default: int, least: int) -> int:
    raw = config.get(name)
    if raw is None or raw == "":
        return default

    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e

    if value < least:
        raise ValueError(f"{name} must be at least {least}, got {value}")

    return value


@dataclass(slots=True, frozen=True)
class LedgerConfig:
    """Construction parameters for a PositionLedger.

    default_leverage: leverage applied to every newly opened position
    price_scale: initial synthetic asset price (before the owner sets one)
    token_decimals: collateral token precision for parsing and reports
    cache_prefix: on-disk location prefix for persisted ledger state
    """

    default_leverage: int = 2
    price_scale: int = 1000
    token_decimals: int = DEFAULT_DECIMALS
    cache_prefix: str = "./ledger-"

    @classmethod
    def from_env(cls, config=None) -> "LedgerConfig":
        if config is None:
            config = CONFIG

        return cls(
            default_leverage=_int_setting(config, "SYNTHLEV_DEFAULT_LEVERAGE", 2, 1),
            price_scale=_int_setting(config, "SYNTHLEV_PRICE_SCALE", 1000, 0),
            token_decimals=_int_setting(
                config, "SYNTHLEV_TOKEN_DECIMALS", DEFAULT_DECIMALS, 0
            ),
            cache_prefix=config.get("SYNTHLEV_CACHE_PREFIX") or "./ledger-",
        )
