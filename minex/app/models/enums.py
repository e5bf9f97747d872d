"""
User roles enumeration.

Defines the role types for the field client.
"""

import enum
from typing import Optional


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        OPERATOR: Opens trips at the mine by scanning a vehicle QR code
        CHECKER: Records the weighed tonnage at the plant to complete a trip
        ADMIN: Back-office user, cannot scan
    """
    OPERATOR = "OPERATOR"
    CHECKER = "CHECKER"
    ADMIN = "ADMIN"

    @classmethod
    def parse(cls, value) -> Optional["UserRole"]:
        """Case-insensitive lookup; the login API sends lowercase roles."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None
