"""
quest_engine/features/catalog/loader.py

Loads the static quest catalog from JSON and caches it per path.
The engine never mutates the catalog.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from quest_engine.core.config import settings
from quest_engine.core.errors import ValidationError
from quest_engine.models.quest import QuestCatalog

logger = logging.getLogger("quest_engine")

_catalog_cache: Dict[str, QuestCatalog] = {}


def parse_catalog(raw: dict) -> QuestCatalog:
    """Validate a decoded catalog document."""
    try:
        return QuestCatalog.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid quest catalog: {exc}") from exc


def load_catalog(path: Optional[str] = None, *, use_cache: bool = True) -> QuestCatalog:
    """
    Load and validate the quest catalog.

    Args:
        path: JSON file to read (defaults to settings.QUEST_CATALOG_PATH)
        use_cache: Reuse a previously parsed catalog for the same path

    Returns:
        QuestCatalog

    Raises:
        ValidationError if the file is missing or malformed
    """
    resolved = str(Path(path or settings.QUEST_CATALOG_PATH).resolve())
    if use_cache and resolved in _catalog_cache:
        return _catalog_cache[resolved]

    try:
        with open(resolved, encoding="utf-8") as fh:
            raw = json.load(fh)
    except FileNotFoundError as exc:
        raise ValidationError(f"Quest catalog not found: {resolved}") from exc
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Quest catalog is not valid JSON: {exc}") from exc

    catalog = parse_catalog(raw)
    logger.info(
        f"Loaded quest catalog: {len(catalog.quests)} quests, {len(catalog.artifacts)} artifacts",
        extra={"event_type": "catalog.loaded"},
    )
    _catalog_cache[resolved] = catalog
    return catalog


def clear_catalog_cache() -> None:
    """FOR TESTING ONLY."""
    _catalog_cache.clear()
