"""
Finance Core

Multi-tenant financial back-office: general ledger with period close,
cash registers and sessions, AR/AP (Cari) subledger and organisation setup.
Every posting is double-entry, Decimal based and audit-trailed.
"""

__version__ = "1.0.0"
