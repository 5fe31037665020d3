"""Load the category keyword table shipped with the package."""

from __future__ import annotations

from functools import cache
from pathlib import Path
from typing import Any

import yaml

from ledgersync.taxonomy.core import (
    AmountProfile,
    CategoryRule,
    Taxonomy,
    normalize_text,
)

DEFAULT_CATEGORIES_PATH = Path(__file__).with_name("categories.yaml")


def _as_keywords(values: Any) -> tuple[str, ...]:
    # Same normalization as narrations, so "mcdonald's" matches "McDonald's".
    normalized = (normalize_text(str(v)) for v in values or ())
    return tuple(kw for kw in normalized if kw)


def _parse_rule(entry: dict[str, Any]) -> CategoryRule:
    rule_type = str(entry.get("type", "expense"))
    if rule_type not in {"income", "expense"}:
        raise ValueError(
            f"Category {entry.get('key')!r} has invalid type {rule_type!r}"
        )

    amount_cfg = entry.get("amount")
    amount = None
    if amount_cfg:
        amount = AmountProfile(
            minimum=float(amount_cfg["min"]),
            maximum=float(amount_cfg["max"]),
            typical=tuple(float(t) for t in amount_cfg.get("typical", ())),
        )

    return CategoryRule(
        key=str(entry["key"]),
        name=str(entry.get("name", entry["key"])),
        type=rule_type,
        keywords=_as_keywords(entry.get("keywords")),
        platform_keywords={
            str(platform): _as_keywords(words)
            for platform, words in (entry.get("platform_keywords") or {}).items()
        },
        amount=amount,
        system=bool(entry.get("system", False)),
    )


def load_taxonomy_from_yaml(path: Path) -> Taxonomy:
    """Parse a categories YAML file into a Taxonomy.

    Raises:
        ValueError: If the file is missing the ``categories`` list or an
            entry is malformed.
    """
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    entries = data.get("categories")
    if not isinstance(entries, list):
        raise ValueError(f"{path} must contain a 'categories' list")
    return Taxonomy.from_rules([_parse_rule(e) for e in entries])


@cache
def default_taxonomy() -> Taxonomy:
    return load_taxonomy_from_yaml(DEFAULT_CATEGORIES_PATH)
