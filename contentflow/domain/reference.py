from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol

from pydantic import BaseModel, ValidationError

from contentflow.core.errors import ReferenceDataError


logger = logging.getLogger(__name__)

THEMATIC_THEME = "theme"
THEMATIC_PROVIDER_TYPE = "provider_type"
THEMATIC_SPECIALTY = "specialty"
THEMATIC_DOMAIN = "domain"
THEMATIC_SERVICE = "service"


@dataclass(frozen=True)
class CountryRow:
    id: int
    code: str
    region_id: int | None = None
    primary_language_id: int | None = None
    is_active: bool = True


@dataclass(frozen=True)
class LanguageRow:
    id: int
    code: str
    is_active: bool = True


@dataclass(frozen=True)
class ThematicRow:
    kind: str
    id: int
    is_active: bool = True


@dataclass(frozen=True)
class ReferenceSnapshot:
    """Read-only view of countries, languages and thematic reference rows.

    Every resolver follows the same rule: an empty or missing filter means
    all active rows, otherwise the listed rows in reference order.
    """

    countries: tuple[CountryRow, ...] = ()
    languages: tuple[LanguageRow, ...] = ()
    thematics: dict[str, tuple[ThematicRow, ...]] = field(default_factory=dict)

    def resolve_countries(
        self, ids: Iterable[int] | None, regions: Iterable[int] | None = None
    ) -> list[CountryRow]:
        wanted = {int(value) for value in ids or ()}
        if wanted:
            return [row for row in self.countries if row.id in wanted]
        region_ids = {int(value) for value in regions or ()}
        if region_ids:
            return [
                row for row in self.countries if row.is_active and row.region_id in region_ids
            ]
        return [row for row in self.countries if row.is_active]

    def resolve_languages(self, values: Iterable[Any] | None) -> list[LanguageRow]:
        # Language filters may hold ids or ISO codes.
        wanted = list(values or ())
        if not wanted:
            return [row for row in self.languages if row.is_active]
        ids = {int(value) for value in wanted if isinstance(value, int) or str(value).isdigit()}
        codes = {str(value).lower() for value in wanted if not str(value).isdigit()}
        return [row for row in self.languages if row.id in ids or row.code.lower() in codes]

    def resolve_thematics(self, kind: str, ids: Iterable[int] | None) -> list[ThematicRow]:
        rows = self.thematics.get(kind, ())
        wanted = {int(value) for value in ids or ()}
        if wanted:
            return [row for row in rows if row.id in wanted]
        return [row for row in rows if row.is_active]

    def active_country_count(self) -> int:
        return sum(1 for row in self.countries if row.is_active)

    def active_language_count(self) -> int:
        return sum(1 for row in self.languages if row.is_active)


class ReferenceDataProvider(Protocol):
    async def load_snapshot(self) -> ReferenceSnapshot:
        ...


class StaticReferenceProvider:
    # Serves a prebuilt snapshot; used by tests and embedded callers.
    def __init__(self, snapshot: ReferenceSnapshot) -> None:
        self._snapshot = snapshot

    async def load_snapshot(self) -> ReferenceSnapshot:
        return self._snapshot


class _CountryModel(BaseModel):
    id: int
    code: str
    region_id: int | None = None
    primary_language_id: int | None = None
    is_active: bool = True


class _LanguageModel(BaseModel):
    id: int
    code: str
    is_active: bool = True


class _ThematicModel(BaseModel):
    id: int
    is_active: bool = True


class _ReferenceFile(BaseModel):
    countries: list[_CountryModel] = []
    languages: list[_LanguageModel] = []
    themes: list[_ThematicModel] = []
    provider_types: list[_ThematicModel] = []
    specialties: list[_ThematicModel] = []
    domains: list[_ThematicModel] = []
    services: list[_ThematicModel] = []


_FILE_THEMATIC_KINDS = {
    "themes": THEMATIC_THEME,
    "provider_types": THEMATIC_PROVIDER_TYPE,
    "specialties": THEMATIC_SPECIALTY,
    "domains": THEMATIC_DOMAIN,
    "services": THEMATIC_SERVICE,
}


class JsonFileReferenceProvider:
    """Load the reference snapshot from a JSON export of the CMS reference tables."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._cached: ReferenceSnapshot | None = None

    async def load_snapshot(self) -> ReferenceSnapshot:
        if self._cached is None:
            self._cached = self._read()
        return self._cached

    def invalidate(self) -> None:
        self._cached = None

    def _read(self) -> ReferenceSnapshot:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ReferenceDataError(f"reference data file not found: {self._path}") from exc
        except json.JSONDecodeError as exc:
            raise ReferenceDataError(f"reference data file is not valid JSON: {exc}") from exc
        try:
            parsed = _ReferenceFile.model_validate(raw)
        except ValidationError as exc:
            raise ReferenceDataError(f"reference data file is malformed: {exc}") from exc

        snapshot = ReferenceSnapshot(
            countries=tuple(CountryRow(**row.model_dump()) for row in parsed.countries),
            languages=tuple(LanguageRow(**row.model_dump()) for row in parsed.languages),
            thematics={
                kind: tuple(
                    ThematicRow(kind=kind, id=row.id, is_active=row.is_active)
                    for row in getattr(parsed, attr)
                )
                for attr, kind in _FILE_THEMATIC_KINDS.items()
            },
        )
        logger.info(
            "reference_snapshot_loaded path=%s countries=%s languages=%s",
            self._path,
            len(snapshot.countries),
            len(snapshot.languages),
        )
        return snapshot
