"""
                        Services Module

Contains all business logic services with the hybrid architecture pattern.
External integrations have Mock (development) and Real (production)
implementations.

Services:
    - catalog, cart, checkout, orders: Ordering core
    - promotions: Discount evaluation and redemption
    - reconciliation: Payment webhook handling
    - reporting, receipts: Analytics and printable documents
    - reviews, users: Menu reviews and staff management
    - payment: Stripe payment processing
    - notifications: SendGrid e-mail and Twilio SMS
    - excel_manager: Process-safe Excel ledger
"""
