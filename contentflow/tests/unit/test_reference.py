from __future__ import annotations

import json

import pytest

from contentflow.core.errors import ContentTypeMismatchError, ReferenceDataError
from contentflow.domain.content import ContentKind, ContentRef, content_kind_for, ensure_matches
from contentflow.domain.reference import THEMATIC_SERVICE, JsonFileReferenceProvider
from contentflow.tests.utils.factories import build_snapshot


def test_generation_types_map_to_content_kinds() -> None:
    assert content_kind_for("pillar") is ContentKind.ARTICLE
    assert content_kind_for("press_release") is ContentKind.PRESS_RELEASE
    assert content_kind_for("dossier") is ContentKind.PRESS_DOSSIER
    with pytest.raises(ValueError):
        content_kind_for("podcast")


def test_ensure_matches_rejects_wrong_variant() -> None:
    ensure_matches("landing", ContentRef.parse("article", 7))
    with pytest.raises(ContentTypeMismatchError):
        ensure_matches("dossier", ContentRef.parse("press_release", 7))


def test_content_ref_parse_normalizes_id() -> None:
    ref = ContentRef.parse("press_dossier", 12)
    assert ref == ContentRef(kind=ContentKind.PRESS_DOSSIER, id="12")


def test_snapshot_resolves_languages_by_id_or_code() -> None:
    snapshot = build_snapshot()
    assert [row.id for row in snapshot.resolve_languages(["EN", 1])] == [1, 3]
    assert snapshot.active_language_count() == 3
    assert snapshot.active_country_count() == 3


def test_explicit_country_list_wins_over_regions() -> None:
    snapshot = build_snapshot()
    assert [row.id for row in snapshot.resolve_countries([2], [2])] == [2]


@pytest.mark.asyncio
async def test_json_file_provider_loads_and_caches(tmp_path) -> None:
    path = tmp_path / "reference.json"
    path.write_text(
        json.dumps(
            {
                "countries": [{"id": 1, "code": "FR", "region_id": 1, "primary_language_id": 1}],
                "languages": [{"id": 1, "code": "fr"}],
                "services": [{"id": 5}],
            }
        ),
        encoding="utf-8",
    )
    provider = JsonFileReferenceProvider(path)
    snapshot = await provider.load_snapshot()
    assert [row.code for row in snapshot.countries] == ["FR"]
    assert [row.id for row in snapshot.resolve_thematics(THEMATIC_SERVICE, None)] == [5]

    path.write_text("{}", encoding="utf-8")
    assert await provider.load_snapshot() is snapshot
    provider.invalidate()
    assert (await provider.load_snapshot()).countries == ()


@pytest.mark.asyncio
async def test_json_file_provider_reports_missing_and_malformed_files(tmp_path) -> None:
    with pytest.raises(ReferenceDataError):
        await JsonFileReferenceProvider(tmp_path / "missing.json").load_snapshot()
    broken = tmp_path / "broken.json"
    broken.write_text('{"countries": [{"code": "FR"}]}', encoding="utf-8")
    with pytest.raises(ReferenceDataError):
        await JsonFileReferenceProvider(broken).load_snapshot()
