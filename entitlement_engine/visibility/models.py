"""
Visibility tiering data models.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Visibility(str, Enum):
    """What a UI should render for a feature."""
    HIDDEN = "hidden"
    LOCKED = "locked"
    ACCESSIBLE = "accessible"


class HiddenReason(str, Enum):
    INACTIVE = "inactive"
    NOT_MONETIZED = "not_monetized"


class CatalogSourceType(str, Enum):
    """Catalog entity types that can sell a feature, in upsell precedence order."""
    PLAN = "plan"
    TRACK = "track"
    ADD_ON = "add_on"
    PROGRAM_PLAN = "program_plan"


CATALOG_SOURCE_PRECEDENCE = (
    CatalogSourceType.PLAN,
    CatalogSourceType.TRACK,
    CatalogSourceType.ADD_ON,
    CatalogSourceType.PROGRAM_PLAN,
)

# Used when the catalog entity has no display_name of its own
DEFAULT_SOURCE_DISPLAY_NAMES: Dict[CatalogSourceType, str] = {
    CatalogSourceType.PLAN: "plan",
    CatalogSourceType.TRACK: "learning track",
    CatalogSourceType.ADD_ON: "add-on",
    CatalogSourceType.PROGRAM_PLAN: "program",
}


@dataclass(frozen=True)
class CatalogOffer:
    """One catalog entity that sells a feature."""
    source_type: CatalogSourceType
    name: Optional[str]
    display_name: Optional[str] = None
    tier_level: Optional[int] = None

    @property
    def source_display_name(self) -> str:
        return self.display_name or DEFAULT_SOURCE_DISPLAY_NAMES[self.source_type]


@dataclass(frozen=True)
class MonetizedFeature:
    """Catalog facts about one feature, independent of any subject.

    ``offer`` is the entity to describe in upsell copy: the lowest tier plan,
    else the first track, add-on or program plan. None means the feature
    is not sold anywhere.
    """
    feature_key: str
    is_active: bool
    offer: Optional[CatalogOffer] = None

    @property
    def is_monetized(self) -> bool:
        return self.offer is not None


@dataclass(frozen=True)
class VisibilityDecision:
    visibility: Visibility
    required_plan_name: Optional[str] = None
    source_type: Optional[CatalogSourceType] = None
    source_display_name: Optional[str] = None
    hidden_reason: Optional[HiddenReason] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "visibility": self.visibility.value,
            "required_plan_name": self.required_plan_name,
            "source_type": self.source_type.value if self.source_type else None,
            "source_display_name": self.source_display_name,
            "hidden_reason": self.hidden_reason.value if self.hidden_reason else None,
        }


ACCESSIBLE = VisibilityDecision(visibility=Visibility.ACCESSIBLE)


class ExportedFeature(BaseModel):
    id: str
    key: str
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True


class ExportedCatalogEntity(BaseModel):
    id: str
    key: Optional[str] = None
    name: str
    display_name: Optional[str] = None
    tier_level: Optional[int] = None


class ExportedAssignment(BaseModel):
    source_type: CatalogSourceType
    entity_id: str
    feature_key: str
    enabled: bool = True
    limit_value: Optional[int] = None


class FeatureAssignmentExport(BaseModel):
    """Admin export of the feature catalog and every feature assignment."""
    version: str = "1.0"
    exported_at: str
    features: List[ExportedFeature] = Field(default_factory=list)
    plans: List[ExportedCatalogEntity] = Field(default_factory=list)
    tracks: List[ExportedCatalogEntity] = Field(default_factory=list)
    add_ons: List[ExportedCatalogEntity] = Field(default_factory=list)
    program_plans: List[ExportedCatalogEntity] = Field(default_factory=list)
    assignments: List[ExportedAssignment] = Field(default_factory=list)
