"""
Grant source adapter contract.
"""

from abc import ABC, abstractmethod
from typing import List

from ..rules.models import AccessSource, FeatureEntitlement


class GrantSourceAdapter(ABC):
    """Reads one grant source for one subject.

    Implementations know nothing about other sources and must raise on
    failure rather than return a partial list; the collector decides what
    a failure means for the whole resolution.
    """

    source: AccessSource

    @abstractmethod
    async def fetch(self, subject_id: str) -> List[FeatureEntitlement]:
        """Return this source's candidates for ``subject_id``."""

    @property
    def name(self) -> str:
        return self.source.value
