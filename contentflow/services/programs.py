from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from contentflow.core.config import get_settings
from contentflow.core.errors import ProgramStateError
from contentflow.domain.content import GENERATION_TYPES
from contentflow.domain.models import (
    PROGRAM_STATUS_ACTIVE,
    PROGRAM_STATUS_COMPLETED,
    PROGRAM_STATUS_DRAFT,
    PROGRAM_STATUS_ERROR,
    PROGRAM_STATUS_PAUSED,
    PROGRAM_STATUS_SCHEDULED,
    Program,
)
from contentflow.domain.policies import QuantityPolicy, RecurrencePolicy
from contentflow.domain.reference import ReferenceSnapshot
from contentflow.services.recurrence import compute_next_run, validate_policy


logger = logging.getLogger(__name__)

DEFAULT_GENERATION_OPTIONS: dict[str, Any] = {
    "word_count": {"min": 1500, "max": 2500},
    "tone": "professional",
    "include_faq": True,
    "faq_count": 5,
    "include_sources": True,
    "image_mode": "unsplash_first",
    "max_images": 2,
    "auto_translate": True,
    "auto_publish": False,
    "seo_optimization": True,
    "quality_threshold": 70,
}

# Unit cost (USD) and wall time (seconds) per generated item.
GENERATION_COSTS: dict[str, Decimal] = {
    "article": Decimal("0.08"),
    "pillar": Decimal("0.25"),
    "comparative": Decimal("0.15"),
    "landing": Decimal("0.12"),
    "manual": Decimal("0.08"),
    "press_release": Decimal("0.10"),
    "dossier": Decimal("0.30"),
}
GENERATION_SECONDS: dict[str, int] = {
    "article": 45,
    "pillar": 90,
    "comparative": 60,
    "landing": 50,
    "manual": 40,
    "press_release": 35,
    "dossier": 120,
}
_FALLBACK_COST = Decimal("0.08")
_FALLBACK_SECONDS = 45
TRANSLATION_COST_PER_LANGUAGE = Decimal("0.02")
IMAGE_COST = Decimal("0.04")

_ACTIVATABLE = (PROGRAM_STATUS_DRAFT, PROGRAM_STATUS_PAUSED, PROGRAM_STATUS_ERROR)
_PAUSABLE = (PROGRAM_STATUS_ACTIVE, PROGRAM_STATUS_SCHEDULED)


@dataclass(frozen=True)
class ContentTypeEstimate:
    items: int
    unit_cost: Decimal
    unit_seconds: int


@dataclass(frozen=True)
class ProgramEstimate:
    # Pre-run sizing shown before activation and logged at run start.
    items_count: int
    estimated_cost: Decimal
    estimated_time_seconds: int
    estimated_time_human: str
    by_content_type: dict[str, ContentTypeEstimate]


def merged_options(program: Program) -> dict[str, Any]:
    return {**DEFAULT_GENERATION_OPTIONS, **(program.options or {})}


def target_counts(program: Program, snapshot: ReferenceSnapshot | None = None) -> tuple[int, int]:
    """Return (countries, languages) counts used for sizing a program.

    Explicit filters count their entries. Empty filters count the active
    reference rows, or the configured defaults when no snapshot is loaded.
    """
    settings = get_settings()
    if program.countries:
        countries = len(program.countries)
    elif snapshot is not None and snapshot.countries:
        countries = len(snapshot.resolve_countries(None, program.regions))
    else:
        countries = settings.default_countries_count

    if program.languages:
        languages = len(program.languages)
    elif snapshot is not None and snapshot.languages:
        languages = snapshot.active_language_count()
    else:
        languages = settings.default_languages_count
    return countries, languages


def estimate_item_count(program: Program, snapshot: ReferenceSnapshot | None = None) -> int:
    content_types = list(program.content_types or [])
    if not content_types:
        return 0
    countries, languages = target_counts(program, snapshot)
    return QuantityPolicy.from_program(program).item_count(len(content_types), countries, languages)


def estimate(program: Program, snapshot: ReferenceSnapshot | None = None) -> ProgramEstimate:
    quantity = QuantityPolicy.from_program(program)
    countries, languages = target_counts(program, snapshot)
    options = merged_options(program)

    total_items = 0
    total_cost = Decimal("0")
    total_seconds = 0
    by_type: dict[str, ContentTypeEstimate] = {}
    for generation_type in program.content_types or []:
        items = quantity.item_count(1, countries, languages)
        unit_cost = GENERATION_COSTS.get(generation_type, _FALLBACK_COST)
        unit_seconds = GENERATION_SECONDS.get(generation_type, _FALLBACK_SECONDS)
        total_items += items
        total_cost += unit_cost * items
        total_seconds += unit_seconds * items
        by_type[generation_type] = ContentTypeEstimate(
            items=items, unit_cost=unit_cost, unit_seconds=unit_seconds
        )

    if options.get("auto_translate", True):
        total_cost += TRANSLATION_COST_PER_LANGUAGE * total_items * max(languages - 1, 0)
    if options.get("image_mode") == "dalle_only":
        total_cost += IMAGE_COST * total_items * int(options.get("max_images", 2))

    return ProgramEstimate(
        items_count=total_items,
        estimated_cost=total_cost.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
        estimated_time_seconds=total_seconds,
        estimated_time_human=format_duration(total_seconds),
        by_content_type=by_type,
    )


def format_duration(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds} seconds"
    if seconds < 3600:
        return f"{round(seconds / 60)} minutes"
    hours, remainder = divmod(seconds, 3600)
    return f"{hours}h {round(remainder / 60)}min"


def validate_program(program: Program) -> None:
    # Reject programs that could never produce a run.
    content_types = list(program.content_types or [])
    if not content_types:
        raise ProgramStateError("program has no content types")
    unknown = [value for value in content_types if value not in GENERATION_TYPES]
    if unknown:
        raise ProgramStateError(f"unknown content types: {unknown}")
    try:
        QuantityPolicy.from_program(program)
    except ValueError as exc:
        raise ProgramStateError(f"invalid quantity policy: {exc}") from exc
    validate_policy(RecurrencePolicy.from_program(program))


def first_run_at(program: Program, now: datetime) -> datetime | None:
    policy = RecurrencePolicy.from_program(program)
    if policy.is_recurring and program.start_at is not None and program.start_at > now:
        # First occurrence at or after start_at.
        return compute_next_run(policy, program.start_at - timedelta(microseconds=1))
    return compute_next_run(policy, now)


def activate(program: Program, now: datetime) -> None:
    if program.status not in _ACTIVATABLE:
        raise ProgramStateError(f"cannot activate program in status {program.status}")
    validate_program(program)
    program.next_run_at = first_run_at(program, now)
    if program.start_at is not None and program.start_at > now:
        program.status = PROGRAM_STATUS_SCHEDULED
    else:
        program.status = PROGRAM_STATUS_ACTIVE
    program.error_message = None
    logger.info(
        "program_activated program_id=%s status=%s next_run_at=%s",
        program.id,
        program.status,
        program.next_run_at,
    )


def pause(program: Program) -> None:
    # In-flight runs keep going; only future ticks are stopped.
    if program.status not in _PAUSABLE:
        raise ProgramStateError(f"cannot pause program in status {program.status}")
    program.status = PROGRAM_STATUS_PAUSED
    logger.info("program_paused program_id=%s", program.id)


def resume(program: Program, now: datetime) -> None:
    if program.status != PROGRAM_STATUS_PAUSED:
        raise ProgramStateError(f"cannot resume program in status {program.status}")
    program.status = PROGRAM_STATUS_ACTIVE
    program.next_run_at = first_run_at(program, now)
    logger.info(
        "program_resumed program_id=%s next_run_at=%s", program.id, program.next_run_at
    )


def mark_completed(program: Program) -> None:
    program.status = PROGRAM_STATUS_COMPLETED
    program.next_run_at = None


def mark_error(program: Program, message: str) -> None:
    program.status = PROGRAM_STATUS_ERROR
    program.error_message = message
    logger.warning("program_error program_id=%s error=%s", program.id, message)
