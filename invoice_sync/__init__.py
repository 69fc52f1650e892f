"""
Invoice Sync - Source Package

Pulls e-invoices collected by a Taiwanese invoice carrier from the
Ministry of Finance platform and turns them into ledger transactions.

DESIGN PRINCIPLES:
1. A sync cycle either saves all of its new transactions or none
2. Re-running a sync never duplicates an invoice
3. Fail visibly: every cycle returns an explicit result
4. Every step must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Invoice Sync Team"
