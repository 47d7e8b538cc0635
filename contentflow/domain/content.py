from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from contentflow.core.errors import ContentTypeMismatchError


class ContentKind(str, Enum):
    # Concrete produced-content variants an item or queue entry can point at.
    ARTICLE = "article"
    PRESS_RELEASE = "press_release"
    PRESS_DOSSIER = "press_dossier"


GENERATION_ARTICLE = "article"
GENERATION_PILLAR = "pillar"
GENERATION_COMPARATIVE = "comparative"
GENERATION_LANDING = "landing"
GENERATION_MANUAL = "manual"
GENERATION_PRESS_RELEASE = "press_release"
GENERATION_DOSSIER = "dossier"

GENERATION_TYPES = (
    GENERATION_ARTICLE,
    GENERATION_PILLAR,
    GENERATION_COMPARATIVE,
    GENERATION_LANDING,
    GENERATION_MANUAL,
    GENERATION_PRESS_RELEASE,
    GENERATION_DOSSIER,
)

GENERATION_CONTENT_KIND: dict[str, ContentKind] = {
    GENERATION_ARTICLE: ContentKind.ARTICLE,
    GENERATION_PILLAR: ContentKind.ARTICLE,
    GENERATION_COMPARATIVE: ContentKind.ARTICLE,
    GENERATION_LANDING: ContentKind.ARTICLE,
    GENERATION_MANUAL: ContentKind.ARTICLE,
    GENERATION_PRESS_RELEASE: ContentKind.PRESS_RELEASE,
    GENERATION_DOSSIER: ContentKind.PRESS_DOSSIER,
}


@dataclass(frozen=True)
class ContentRef:
    """Reference to a produced content entity: a type tag plus its id."""

    kind: ContentKind
    id: str

    @classmethod
    def parse(cls, kind: str, content_id: str | int) -> "ContentRef":
        return cls(kind=ContentKind(kind), id=str(content_id))


def content_kind_for(generation_type: str) -> ContentKind:
    try:
        return GENERATION_CONTENT_KIND[generation_type]
    except KeyError:
        raise ValueError(f"Unknown generation type: {generation_type}") from None


def ensure_matches(generation_type: str, content: ContentRef) -> None:
    # Completed items must point at the variant their generation type produces.
    expected = content_kind_for(generation_type)
    if content.kind is not expected:
        raise ContentTypeMismatchError(
            f"{generation_type} produces {expected.value}, got {content.kind.value}"
        )
