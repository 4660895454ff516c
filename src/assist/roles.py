"""
Shared role and mode types.
"""

from enum import Enum
from typing import Optional


class Role(str, Enum):
    """Logical audio source within one call."""
    OPERATOR = "operator"
    COUNTERPARTY = "counterparty"


class ConversationMode(str, Enum):
    """Who the operator is talking to."""
    SALES = "sales"
    VENDOR = "vendor"


# Older clients name the sources after the browser audio devices.
_ROLE_ALIASES = {
    "operator": Role.OPERATOR,
    "input_audio": Role.OPERATOR,
    "microphone": Role.OPERATOR,
    "counterparty": Role.COUNTERPARTY,
    "output_audio": Role.COUNTERPARTY,
    "customer": Role.COUNTERPARTY,
}

COUNTERPARTY_LABELS = {
    ConversationMode.SALES: "Lead",
    ConversationMode.VENDOR: "Vendor Rep",
}


def parse_role(value: object) -> Optional[Role]:
    """Map a wire `audioSource` value to a role, or None if unknown."""
    if not isinstance(value, str):
        return None
    return _ROLE_ALIASES.get(value.strip().lower())


def role_label(role: Role, mode: ConversationMode, operator_label: str = "Sales Rep") -> str:
    """Transcript label for a role; the counterparty label depends on the mode."""
    if role is Role.OPERATOR:
        return operator_label
    return COUNTERPARTY_LABELS[mode]
