"""
API routers, one per area of the backend.
"""

from biteclub.routes import admin, calls, credits, integrations, orders

routers = [
    orders.router,
    credits.router,
    calls.router,
    integrations.router,
    admin.router,
]

__all__ = ["routers"]
