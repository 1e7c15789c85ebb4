from abc import ABC, abstractmethod

from escrowhouse.common.logging import get_logger


def is_mock_url(url: str) -> bool:
    return url.startswith("mock")


class BaseIntegration(ABC):
    """A collaborator the engine calls over the network.

    Subclasses talk to the real service when configured, and to an
    in-process mock when their key or URL starts with ``mock``.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = get_logger(f"integrations.{name}")

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True when the collaborator answers."""
        ...

    async def status(self) -> str:
        return "ok" if await self.health_check() else "unavailable"
