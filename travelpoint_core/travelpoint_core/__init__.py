"""TravelPoint domain engine.

Billing plans and the subscription state machine, the per-cabin payment
ledger, and the SQLAlchemy state store shared by the API and the CLI.
"""

__version__ = "0.4.0"
