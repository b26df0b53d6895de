"""
Money Market Custody Backend

Custodial backend for a tokenised money market fund: 1:1 pegged fund
tokens, daily-compounded interest in Decimal, two-manager multi-signature
control over supply and rates, and a hash-chained audit trail.
"""

__version__ = "1.0.0"
