"""
Caller roles enumeration.

Defines the role types that call into the dispatch core.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Operator with reconciliation and maintenance access
        CUSTOMER: Creates truck-demand broadcasts
        TRANSPORTER: Claims trucks against broadcasts and binds drivers
        DRIVER: Accepts or declines assignments and reports positions
    """
    ADMIN = "ADMIN"
    CUSTOMER = "CUSTOMER"
    TRANSPORTER = "TRANSPORTER"
    DRIVER = "DRIVER"
