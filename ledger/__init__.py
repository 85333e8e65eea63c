"""
Settlement and position ledger engine for cl_equity_ledger.

This package contains the settlement-date calculator, the position
aggregation engine and the services that persist and report the
equities balance built from brokerage trade confirmations.
"""

__version__ = "1.0.0"
__author__ = "cl_equity_ledger team"
