# MIT License
# Copyright (c) 2025 Hashborn

"""
LiquidStake: pooled liquid-staking core.

Users deposit a base asset and receive fungible receipts; the core delegates
pooled principal to a staking delegate and redeems receipts at the current
exchange rate.
"""

__version__ = "0.1.0"
