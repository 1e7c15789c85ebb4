"""EscrowHouse external collaborators.

Every client implements ``BaseIntegration``. Each runs against the real
service when configured and falls back to an in-process mock when its key or
URL is prefixed ``mock``.
"""

from escrowhouse.integrations.base import BaseIntegration
from escrowhouse.integrations.escrow_provider import EscrowProviderClient
from escrowhouse.integrations.mediators import MediatorAssignmentClient
from escrowhouse.integrations.notifications import NotificationClient
from escrowhouse.integrations.rules_engine import RulesEngineClient

__all__ = [
    "BaseIntegration",
    "EscrowProviderClient",
    "MediatorAssignmentClient",
    "NotificationClient",
    "RulesEngineClient",
]
