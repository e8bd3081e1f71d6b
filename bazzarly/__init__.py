"""
Bazzarly marketplace API.

A Flask service for a local marketplace: user accounts with email/phone
verification, individual and store listings with comments and offers,
storefronts with delegated staff, and an administration surface for
moderation and reporting. Persistence is MongoDB through PyMongo.

Usage:
    from bazzarly import create_app
    app = create_app('production')
"""

__version__ = '1.0.0'

from bazzarly.app import create_app  # noqa: E402

__all__ = ['__version__', 'create_app']
