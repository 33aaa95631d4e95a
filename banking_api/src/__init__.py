"""FastAPI service for the Payvost banking platform.

This package provides REST API endpoints for transfers and ledgers, fee
rules, FX quotes, compliance review, KYC decisions and admin dashboards.
"""

__version__ = "1.0.0"
