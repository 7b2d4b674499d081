"""
Feature Sink
============

Where features proposed during an expansion chat end up.

The agent proposes features inside ``<features_to_create>`` blocks holding a
JSON array.  ``parse_feature_blocks`` pulls them out of a reply; a
``FeatureSink`` stores them and returns ``{"id", "name", "category"}``
summaries.  Persistence is not this service's concern, so the default sink
keeps features in memory for the life of the process.
"""

import json
import logging
import re
import threading
from typing import Any, Protocol

from .chat_constants import DEFAULT_FEATURE_CATEGORY

logger = logging.getLogger(__name__)

FEATURES_BLOCK_PATTERN = re.compile(
    r"<features_to_create>\s*(\[[\s\S]*?\])\s*</features_to_create>"
)


def parse_feature_blocks(text: str) -> list[dict[str, Any]]:
    """
    Extract proposed features from every ``<features_to_create>`` block in ``text``.

    Entries are deduplicated by name (first wins); entries without a string
    name are dropped.  A block with malformed JSON is logged and skipped.
    """
    features: list[dict[str, Any]] = []
    seen_names: set[str] = set()

    for match in FEATURES_BLOCK_PATTERN.finditer(text or ""):
        try:
            entries = json.loads(match.group(1))
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse features JSON block: {e}")
            continue

        for entry in entries:
            if not isinstance(entry, dict):
                continue
            name = entry.get("name")
            if not isinstance(name, str) or not name.strip() or name in seen_names:
                continue
            seen_names.add(name)
            features.append(entry)

    return features


class FeatureSink(Protocol):
    def create_features(self, project_name: str, features: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Store ``features`` and return ``{"id", "name", "category"}`` for each one created."""
        ...


class InMemoryFeatureSink:
    """Process-local FeatureSink; ids are unique across projects."""

    def __init__(self):
        self._lock = threading.Lock()
        self._next_id = 1
        self._features: dict[str, list[dict[str, Any]]] = {}

    def create_features(self, project_name: str, features: list[dict[str, Any]]) -> list[dict[str, Any]]:
        created = []
        with self._lock:
            bucket = self._features.setdefault(project_name, [])
            for entry in features:
                steps = entry.get("steps")
                feature = {
                    "id": self._next_id,
                    "category": str(entry.get("category") or DEFAULT_FEATURE_CATEGORY),
                    "name": str(entry.get("name") or "Unnamed feature"),
                    "description": str(entry.get("description") or ""),
                    "steps": [str(step) for step in steps] if isinstance(steps, list) else [],
                }
                self._next_id += 1
                bucket.append(feature)
                created.append({"id": feature["id"], "name": feature["name"], "category": feature["category"]})
        return created

    def list_features(self, project_name: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(feature) for feature in self._features.get(project_name, [])]
