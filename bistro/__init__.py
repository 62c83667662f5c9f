"""
                Bistro Ordering

Restaurant ordering backend: catalog, cart, checkout, promotions,
kitchen workflow, payment reconciliation and reporting, with a hybrid
Mock/Real API architecture.

Version: 4.0.0
License: MIT
"""

__version__ = "4.0.0"
