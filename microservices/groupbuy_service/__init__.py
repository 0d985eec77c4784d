"""
Group-Buy Service

Crowd-pledge group buying microservice providing:
- Campaign lifecycle (publish, grace period, lock or cancel, complete)
- Tiered volume pricing from discount brackets
- Pledge ledger consistent with campaign status
- Order materialization from successful payments
- Scheduled drivers for grace periods, evaluation and payment follow-up

Port: 8260
"""

__version__ = "1.0.0"
__service__ = "groupbuy_service"
