"""
Investment Engine

Rate resolution, investment lifecycle, payout scheduling, early-withdrawal
pricing and portfolio analytics for a multi-tenant banking backend. All
financial calculations use Decimal precision and every state change is
written to a hash-chained audit trail.
"""

__version__ = "1.0.0"
