"""boekdichtbij_shared — Booking assignment core shared by the BoekDichtbij Lambdas.

Provides:
    - Single-table DynamoDB record store with conditional writes
    - Booking state machine (central transition table)
    - Multi-wave provider dispatch and the acceptance resolver
    - Deadline / refund recovery and periodic sweeps
    - Scheduler, WhatsApp notifier and Stripe integrations
    - HTTP response helpers with CORS
"""

__version__ = "1.0.0"
