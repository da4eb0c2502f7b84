"""
Company knowledge loaded into the system prompt.

The knowledge file is either ``{"items": [...], "metadata": [...]}`` or a
bare list of strings. Only the company/team facts and the project list are
used; nothing is searched.
"""

import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)

_PROJECT_TITLE = re.compile(r"Project:\s*(.*?)\.\s*Client:")
SUMMARY_PREFIX = "Summary List of All"


class KnowledgeBase:
    """Loaded knowledge items plus optional per-item metadata."""

    def __init__(self, texts: Optional[List[str]] = None,
                 metadata: Optional[List[Dict]] = None):
        self.texts: List[str] = list(texts or [])
        self.metadata: List[Dict] = list(metadata or [])

    @property
    def initialized(self) -> bool:
        return bool(self.texts)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "KnowledgeBase":
        """Load from a JSON file. Failures leave the knowledge base empty."""
        path = Path(path).expanduser()
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load knowledge base from {path}: {e}")
            return cls()

        if isinstance(data, dict):
            kb = cls(data.get("items") or [], data.get("metadata") or [])
        else:
            kb = cls(data)
        logger.info(f"Knowledge base initialized with {len(kb.texts)} items")
        return kb

    def project_list(self) -> str:
        """Comma-separated project titles, or the summary item when present."""
        if not self.texts:
            return ""

        for text in self.texts:
            if text.startswith(SUMMARY_PREFIX):
                return text.split(":", 1)[1].strip()

        titles = []
        for text in self.texts:
            if text.startswith("Project:"):
                match = _PROJECT_TITLE.search(text)
                if match:
                    titles.append(match.group(1))
        return ", ".join(titles)

    def company_info(self) -> str:
        """Company and team facts, one per line."""
        if not self.texts:
            return ""

        if self.metadata and len(self.metadata) == len(self.texts):
            items = [
                text for text, meta in zip(self.texts, self.metadata)
                if meta.get("type") in ("company", "team")
            ]
            if items:
                return "\n".join(items)

        return "\n".join(
            text for text in self.texts
            if not text.startswith("Project:") and not text.startswith("Summary List")
        )
