"""Content data models: what the store exposes to the knowledge base."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional


class SourceType(str, Enum):
    """Kinds of store content the scanner can yield."""
    PRODUCT = "product"
    PAGE = "page"
    POLICY = "policy"
    FAQ = "faq"
    SETTING = "setting"


class ChangeType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass
class ContentUnit:
    """A scannable piece of store content, created per scan pass."""
    source_id: str
    source_type: SourceType
    title: str
    raw_text: str
    url: str = ""
    language: str = "en"
    last_modified_at: Optional[datetime] = None


@dataclass(frozen=True)
class ContentChangeEvent:
    """A host-platform content change translated for the pipeline."""
    source_id: str
    change_type: ChangeType
    source_type: Optional[SourceType] = None


@dataclass(frozen=True)
class SourceFilter:
    """Restricts a reindex run to some source types and/or source ids."""
    source_types: FrozenSet[SourceType] = field(default_factory=frozenset)
    source_ids: FrozenSet[str] = field(default_factory=frozenset)

    def includes(self, unit: ContentUnit) -> bool:
        if self.source_types and unit.source_type not in self.source_types:
            return False
        if self.source_ids and unit.source_id not in self.source_ids:
            return False
        return True
