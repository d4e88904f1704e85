"""
Tradeflow order lifecycle service.

Quotation and retail order state machines with deposit/balance payment
splitting, inventory reservation and payment idempotency.
"""

__version__ = "1.0.0"
