from __future__ import annotations

from collections import Counter

from contentflow.domain.models import Program
from contentflow.services.expansion import build_items, plan_items, thematics_for
from contentflow.tests.utils.factories import build_snapshot, program_fields, utc


def _program(**overrides) -> Program:
    content_types = overrides.pop("content_types", ["article"])
    return Program(id="prog-1", name="Guides", content_types=content_types, **program_fields(**overrides))


def test_per_country_language_expands_full_matrix() -> None:
    program = _program(quantity_mode="per_country_language", quantity_value=2, countries=[1, 2, 3], languages=[1, 3])
    planned = plan_items(program, build_snapshot())
    assert len(planned) == 12
    pairs = Counter((item.country_id, item.language_id) for item in planned)
    assert set(pairs.values()) == {2}
    assert len(pairs) == 6


def test_per_country_uses_primary_language() -> None:
    program = _program(quantity_mode="per_country", quantity_value=1)
    planned = plan_items(program, build_snapshot())
    # Inactive countries are skipped when no explicit list is given.
    assert [(item.country_id, item.language_id) for item in planned] == [(1, 1), (2, 2), (3, 3)]


def test_per_country_falls_back_to_round_robin_languages() -> None:
    program = _program(quantity_mode="per_country", quantity_value=1, languages=["en", "de"])
    planned = plan_items(program, build_snapshot())
    languages = {item.country_id: item.language_id for item in planned}
    assert languages[2] == 2
    assert languages[3] == 3
    assert languages[1] in {2, 3}


def test_per_language_round_robins_countries() -> None:
    program = _program(quantity_mode="per_language", quantity_value=2, countries=[1, 3])
    planned = plan_items(program, build_snapshot())
    assert len(planned) == 6
    assert Counter(item.country_id for item in planned) == {1: 3, 3: 3}


def test_total_spreads_items_over_combinations() -> None:
    program = _program(quantity_mode="total", quantity_value=5, countries=[1], languages=[1, 2])
    planned = plan_items(program, build_snapshot())
    assert len(planned) == 5
    assert Counter(item.language_id for item in planned) == {1: 3, 2: 2}


def test_total_rotation_resumes_after_previous_runs() -> None:
    snapshot = build_snapshot()
    first = plan_items(_program(quantity_mode="total", quantity_value=2, run_count=0), snapshot)
    second = plan_items(_program(quantity_mode="total", quantity_value=2, run_count=1), snapshot)
    assert [(item.country_id, item.language_id) for item in first] == [(1, 1), (1, 2)]
    assert [(item.country_id, item.language_id) for item in second] == [(1, 3), (2, 1)]


def test_per_language_rotation_resumes_after_previous_runs() -> None:
    snapshot = build_snapshot()
    program = _program(quantity_mode="per_language", quantity_value=1, countries=[1, 3])
    assert [item.country_id for item in plan_items(program, snapshot)] == [1, 3, 1]
    program.run_count = 1
    assert [item.country_id for item in plan_items(program, snapshot)] == [3, 1, 3]


def test_theme_rotation_resumes_after_previous_runs() -> None:
    program = _program(quantity_mode="total", quantity_value=3, run_count=1)
    planned = plan_items(program, build_snapshot())
    assert [item.thematic_id for item in planned] == [11, 10, 11]


def test_regions_filter_selects_active_countries() -> None:
    program = _program(quantity_mode="per_country", quantity_value=1, regions=[2])
    planned = plan_items(program, build_snapshot())
    assert [item.country_id for item in planned] == [3]


def test_content_types_multiply_items() -> None:
    program = _program(content_types=["article", "press_release"], quantity_mode="total", quantity_value=2)
    planned = plan_items(program, build_snapshot())
    assert Counter(item.generation_type for item in planned) == {"article": 2, "press_release": 2}


def test_landing_prefers_provider_types() -> None:
    snapshot = build_snapshot()
    program = _program(content_types=["landing"])
    assert [row.id for row in thematics_for(program, "landing", snapshot)] == [20]
    assert [row.id for row in thematics_for(program, "article", snapshot)] == [10, 11]


def test_themes_round_robin_and_theme_id() -> None:
    program = _program(quantity_mode="total", quantity_value=3)
    planned = plan_items(program, build_snapshot())
    assert [item.thematic_id for item in planned] == [10, 11, 10]
    assert all(item.theme_id == item.thematic_id for item in planned)


def test_build_items_creates_pending_rows() -> None:
    program = _program(quantity_mode="per_country_language", quantity_value=2, countries=[1, 2, 3], languages=[1, 3])
    planned = plan_items(program, build_snapshot())
    now = utc(2024, 1, 2, 8, 0, 1)
    items = build_items(program, "run-1", planned, now=now, generation_params={"tone": "formal"})
    assert len(items) == 12
    assert {item.status for item in items} == {"pending"}
    assert len({item.id for item in items}) == 12
    assert all(item.program_run_id == "run-1" and item.created_at == now for item in items)
    assert items[0].generation_params == {"tone": "formal"}
