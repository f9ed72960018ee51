# MIT License
# Copyright (c) 2025 Hashborn

"""
Exchange-rate math between the base asset and the receipt token.

All conversions are integer and round down, so every rounding remainder stays
in the pool and the rate can only move up from it.

Static mode pins the rate to 1 as long as the pool is fully backed; an
impaired pool (managed assets below supply, e.g. after slashing) falls back to
the dynamic rate so that late redeemers are not left holding unbacked receipts.
"""

from decimal import Decimal, ROUND_DOWN, localcontext
from fractions import Fraction
from ...protocol.config.params import DECIMALS
from ...protocol.types.common import ExchangeRateMode, InvalidAmount

ONE = Fraction(1)


def _pinned(mode: ExchangeRateMode, managed_assets: int, receipt_supply: int) -> bool:
    if receipt_supply == 0:
        return True
    return mode == ExchangeRateMode.STATIC and managed_assets >= receipt_supply


def exchange_rate(managed_assets: int, receipt_supply: int,
                  mode: ExchangeRateMode = ExchangeRateMode.DYNAMIC) -> Fraction:
    """Base-asset units per receipt unit. 1 at genesis."""
    if _pinned(mode, managed_assets, receipt_supply):
        return ONE
    return Fraction(managed_assets, receipt_supply)


def receipts_for_deposit(amount: int, managed_assets: int, receipt_supply: int,
                         mode: ExchangeRateMode = ExchangeRateMode.DYNAMIC) -> int:
    """
    Receipts minted for a deposit of `amount` base units.

    Raises:
        InvalidAmount: receipts are outstanding but nothing backs them
    """
    if _pinned(mode, managed_assets, receipt_supply):
        return amount
    if managed_assets <= 0:
        raise InvalidAmount("Pool has outstanding receipts but no managed assets")
    return amount * receipt_supply // managed_assets


def assets_for_receipts(receipt_amount: int, managed_assets: int, receipt_supply: int,
                        mode: ExchangeRateMode = ExchangeRateMode.DYNAMIC) -> int:
    """Base units redeemable for `receipt_amount` receipts."""
    if _pinned(mode, managed_assets, receipt_supply):
        return receipt_amount
    return receipt_amount * managed_assets // receipt_supply


def split_redemption(base_amount: int, total_principal: int, managed_assets: int):
    """
    Split a payout into (principal_part, reward_part).

    The principal share is proportional to principal / managed assets so that
    total_principal never goes negative while rewards are outstanding.
    """
    if managed_assets <= 0 or total_principal >= managed_assets:
        principal_part = min(base_amount, total_principal)
    else:
        principal_part = base_amount * total_principal // managed_assets
    return principal_part, base_amount - principal_part


def fee_receipts(fee_value: int, managed_assets_ex_fee: int, receipt_supply: int,
                 mode: ExchangeRateMode = ExchangeRateMode.DYNAMIC) -> int:
    """
    Receipts to mint so the treasury holds `fee_value` worth without moving
    the rate seen by existing holders.
    """
    if fee_value <= 0:
        return 0
    if _pinned(mode, managed_assets_ex_fee, receipt_supply) or managed_assets_ex_fee <= 0:
        return fee_value
    return fee_value * receipt_supply // managed_assets_ex_fee


def format_rate(rate: Fraction, places: int = DECIMALS) -> str:
    """Fixed-point string for events and logs."""
    with localcontext() as ctx:
        ctx.prec = 80
        quant = Decimal(1).scaleb(-places)
        value = Decimal(rate.numerator) / Decimal(rate.denominator)
        return format(value.quantize(quant, rounding=ROUND_DOWN), "f")
