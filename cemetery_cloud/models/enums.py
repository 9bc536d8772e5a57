"""Enums for the cemetery records system."""
from enum import Enum


class PlotStatus(str, Enum):
    """Conventional plot lifecycle values. Stored as free text, so others are accepted."""
    AVAILABLE = "Available"
    RESERVED = "Reserved"
    OCCUPIED = "Occupied"


class BurialType(str, Enum):
    """Known burial types. Input is normalized to uppercase before storage."""
    BURIAL = "BURIAL"
    CREMATION = "CREMATION"
    REBURIAL = "REBURIAL"


class Role(str, Enum):
    MANAGER = "manager"
    ADMINISTRATOR = "administrator"
    SUPERVISOR = "supervisor"


class Permission(str, Enum):
    """Full permission may mutate records; read may only list them."""
    FULL = "full"
    READ = "read"
