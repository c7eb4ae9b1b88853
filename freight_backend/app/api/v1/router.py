"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from freight_backend.app.api.v1.endpoints import (
    broadcasts, assignments, tracking, supply,
    notifications, admin_ops,
)

router = APIRouter()

# Customer demand and transporter claims
router.include_router(broadcasts.router)

# Reservations and driver offers
router.include_router(assignments.router)

# Live trips
router.include_router(tracking.router)

# Transporter presence for new-load alerts
router.include_router(supply.router)

# In-app inbox
router.include_router(notifications.router)

# Ops endpoints
router.include_router(admin_ops.router)
