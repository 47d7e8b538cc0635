from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Sequence, TypeVar

from contentflow.domain.content import GENERATION_LANDING
from contentflow.domain.models import ITEM_STATUS_PENDING, Program, ProgramItem
from contentflow.domain.policies import (
    QUANTITY_PER_COUNTRY,
    QUANTITY_PER_COUNTRY_LANGUAGE,
    QUANTITY_PER_LANGUAGE,
    QuantityPolicy,
)
from contentflow.domain.reference import (
    THEMATIC_DOMAIN,
    THEMATIC_PROVIDER_TYPE,
    THEMATIC_SERVICE,
    THEMATIC_SPECIALTY,
    THEMATIC_THEME,
    CountryRow,
    LanguageRow,
    ReferenceSnapshot,
    ThematicRow,
)


T = TypeVar("T")

# Landing pages target the first thematic dimension that resolves to rows.
_LANDING_THEMATIC_ORDER = (
    (THEMATIC_PROVIDER_TYPE, "provider_types"),
    (THEMATIC_SPECIALTY, "specialties"),
    (THEMATIC_DOMAIN, "domains"),
    (THEMATIC_SERVICE, "services"),
    (THEMATIC_THEME, "themes"),
)


@dataclass(frozen=True)
class PlannedItem:
    generation_type: str
    country_id: int | None
    language_id: int | None
    thematic_type: str | None = None
    thematic_id: int | None = None

    @property
    def theme_id(self) -> int | None:
        return self.thematic_id if self.thematic_type == THEMATIC_THEME else None


def thematics_for(
    program: Program, generation_type: str, snapshot: ReferenceSnapshot
) -> list[ThematicRow]:
    if generation_type == GENERATION_LANDING:
        for kind, attr in _LANDING_THEMATIC_ORDER:
            rows = snapshot.resolve_thematics(kind, getattr(program, attr))
            if rows:
                return rows
        return []
    return snapshot.resolve_thematics(THEMATIC_THEME, program.themes)


def plan_items(program: Program, snapshot: ReferenceSnapshot) -> list[PlannedItem]:
    """Expand a program's target matrix into one planned item per unit of work.

    Countries, languages and thematics are resolved through the snapshot.
    Where a mode does not iterate a dimension, values are spread round-robin.
    The rotation resumes where the previous run stopped (`run_count` times
    the per-type quantity), so repeated runs walk the whole matrix.
    """
    quantity = QuantityPolicy.from_program(program)
    countries = snapshot.resolve_countries(program.countries, program.regions)
    languages = snapshot.resolve_languages(program.languages)
    offset = int(program.run_count or 0) * quantity.value

    planned: list[PlannedItem] = []
    for generation_type in program.content_types or []:
        thematics = thematics_for(program, generation_type, snapshot)
        targets = _targets(quantity, countries, languages, offset)
        for index, (country, language) in enumerate(targets):
            thematic = _pick(thematics, offset + index)
            planned.append(
                PlannedItem(
                    generation_type=generation_type,
                    country_id=country.id if country else None,
                    language_id=language.id if language else None,
                    thematic_type=thematic.kind if thematic else None,
                    thematic_id=thematic.id if thematic else None,
                )
            )
    return planned


def build_items(
    program: Program,
    run_id: str,
    planned: Sequence[PlannedItem],
    *,
    now: datetime,
    generation_params: dict[str, Any],
) -> list[ProgramItem]:
    return [
        ProgramItem(
            id=uuid.uuid4().hex,
            program_id=program.id,
            program_run_id=run_id,
            country_id=item.country_id,
            language_id=item.language_id,
            theme_id=item.theme_id,
            thematic_type=item.thematic_type,
            thematic_id=item.thematic_id,
            generation_type=item.generation_type,
            status=ITEM_STATUS_PENDING,
            cost=Decimal("0"),
            generation_params=dict(generation_params),
            created_at=now,
        )
        for item in planned
    ]


def _targets(
    quantity: QuantityPolicy,
    countries: list[CountryRow],
    languages: list[LanguageRow],
    offset: int = 0,
) -> list[tuple[CountryRow | None, LanguageRow | None]]:
    if quantity.mode == QUANTITY_PER_COUNTRY_LANGUAGE:
        return [
            (country, language)
            for country in countries
            for language in languages
            for _ in range(quantity.value)
        ]
    if quantity.mode == QUANTITY_PER_COUNTRY:
        targets = []
        language_ids = {language.id: language for language in languages}
        for country in countries:
            primary = language_ids.get(country.primary_language_id)
            for _ in range(quantity.value):
                language = primary or _pick(languages, offset + len(targets))
                targets.append((country, language))
        return targets
    if quantity.mode == QUANTITY_PER_LANGUAGE:
        targets = []
        for language in languages:
            for _ in range(quantity.value):
                targets.append((_pick(countries, offset + len(targets)), language))
        return targets

    # total: spread `value` items across (country, language) combinations.
    combos = [(country, language) for country in countries for language in languages]
    if not combos:
        combos = [(_pick(countries, 0), _pick(languages, 0))]
    return [combos[(offset + index) % len(combos)] for index in range(quantity.value)]


def _pick(rows: Sequence[T], index: int) -> T | None:
    if not rows:
        return None
    return rows[index % len(rows)]
