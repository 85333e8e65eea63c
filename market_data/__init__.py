"""
Market data modules for cl_equity_ledger.

This package contains modules for retrieving reference data from
external sources, such as the Chilean holiday calendar.
"""

__version__ = "1.0.0"
__author__ = "cl_equity_ledger team"
