"""
Plan Ledger - Source Package

The shared-plan contribution ledger and settlement engine behind
"management plans": several participants fund a pool of shared
expenses and periodically reconcile who owes whom.

DESIGN PRINCIPLES:
1. Balances are always recomputed from the ledger, never carried forward
2. Fail early, fail visibly
3. No silent corrections (mismatches are flagged, not hidden)
4. Every mutation is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Plan Ledger Team"
