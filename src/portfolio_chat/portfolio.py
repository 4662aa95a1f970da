from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

logger = logging.getLogger(__name__)


# -----------------------------
# Data model
# -----------------------------

@dataclass
class PortfolioItem:
    """
    One piece of curated portfolio content.

    Fields:
        title: Short heading ("Python", "Portfolio chat backend", ...).
        content: Free text shown to the model and the frontend.
        tags: Optional search tags.
        category: The category the item was loaded under.
    """
    title: str
    content: str
    tags: List[str] = field(default_factory=list)
    category: str = ""

    def to_dict(self, item_id: int = 0) -> Dict[str, Any]:
        return {
            "id": item_id,
            "title": self.title,
            "content": self.content,
            "tags": list(self.tags),
            "category": self.category,
        }

    def render(self) -> str:
        return f"- {self.title}: {self.content.strip()}"


CATEGORY_KEYWORDS: Mapping[str, Tuple[str, ...]] = {
    "skills": ("skill", "technolog", "tech stack", "stack", "know", "language", "framework"),
    "projects": ("project", "portfolio", "work on", "built", "build", "app"),
    "experience": ("experience", "job", "career", "role", "company", "worked"),
    "education": ("education", "degree", "study", "studied", "university", "school", "course"),
    "about": ("about", "who", "introduction", "bio", "yourself"),
}
CATEGORIES: Tuple[str, ...] = tuple(CATEGORY_KEYWORDS)
MAX_CONTEXT_ITEMS = 5
CONTEXT_HEADER = "PORTFOLIO INFORMATION:"
_TERM_SPLIT = re.compile(r"[\s,.?!]+")


def _coerce_item(raw: Any, category: str) -> Optional[PortfolioItem]:
    if isinstance(raw, str):
        text = raw.strip()
        return PortfolioItem(title=text[:60], content=text, category=category) if text else None
    if isinstance(raw, dict):
        content = str(raw.get("content", "") or "").strip()
        title = str(raw.get("title", "") or "").strip()
        if not content and not title:
            return None
        tags = raw.get("tags") or []
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",") if t.strip()]
        return PortfolioItem(
            title=title or content[:60],
            content=content,
            tags=[str(t) for t in tags],
            category=category,
        )
    return None


# -----------------------------
# Enricher
# -----------------------------

class PortfolioEnricher:
    """
    Curated portfolio content, used to enrich chat prompts and to serve the
    read-only portfolio routes.

    YAML layout:
        owner_text: |          # optional free text prepended to every context
          ...
        categories:
          skills:
            - {title: Python, content: "...", tags: [backend]}
          projects: [...]
          experience: [...]
          education: [...]
          about: [...]

    A missing or unreadable file leaves the enricher empty; nothing here raises
    to the caller.
    """

    def __init__(
        self,
        path: Union[str, Path, None] = None,
        *,
        data: Optional[Dict[str, Any]] = None,
        max_items: int = MAX_CONTEXT_ITEMS,
    ) -> None:
        self.path = Path(path) if path else None
        self.max_items = max(1, int(max_items))
        self._lock = threading.RLock()
        self.owner_text = ""
        self._items: Dict[str, List[PortfolioItem]] = {c: [] for c in CATEGORIES}
        if data is not None:
            self._load_dict(data)
        else:
            self.reload()

    # -------------------------
    # Loading
    # -------------------------
    def reload(self) -> None:
        if self.path is None:
            return
        if not self.path.exists():
            logger.warning("Portfolio file not found: %s", self.path)
            return
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error("Could not load portfolio file %s: %s", self.path, e)
            return
        if not isinstance(data, dict):
            logger.error("Portfolio file %s is not a mapping", self.path)
            return
        self._load_dict(data)

    def _load_dict(self, data: Dict[str, Any]) -> None:
        items: Dict[str, List[PortfolioItem]] = {c: [] for c in CATEGORIES}
        cats = data.get("categories") or {}
        if isinstance(cats, dict):
            for name, raw_items in cats.items():
                key = str(name).strip().lower()
                if key not in items:
                    logger.warning("Ignoring unknown portfolio category %r", name)
                    continue
                for raw in raw_items or []:
                    item = _coerce_item(raw, key)
                    if item is not None:
                        items[key].append(item)
        with self._lock:
            self.owner_text = str(data.get("owner_text", "") or "").strip()
            self._items = items
        logger.info(
            "Loaded portfolio content: %s",
            ", ".join(f"{k}={len(v)}" for k, v in items.items()),
        )

    # -------------------------
    # Queries
    # -------------------------
    def categories(self) -> List[str]:
        return list(CATEGORIES)

    def category(self, name: str) -> List[PortfolioItem]:
        with self._lock:
            return list(self._items.get((name or "").strip().lower(), []))

    def search(self, query: str) -> List[PortfolioItem]:
        """Items whose title, content or tags contain any query term."""
        terms = [t for t in _TERM_SPLIT.split((query or "").lower()) if t]
        if not terms:
            return []
        with self._lock:
            pool = [i for items in self._items.values() for i in items]
        hits: List[PortfolioItem] = []
        for item in pool:
            hay = " ".join([item.title, item.content, " ".join(item.tags)]).lower()
            if any(t in hay for t in terms):
                hits.append(item)
        return hits

    def _route(self, message: str) -> List[str]:
        lower = (message or "").lower()
        return [c for c, words in CATEGORY_KEYWORDS.items() if any(w in lower for w in words)]

    def select(self, message: str) -> List[PortfolioItem]:
        """Pick up to ``max_items`` items relevant to ``message``."""
        with self._lock:
            matched = self._route(message)
            if matched:
                chosen = [i for c in matched for i in self._items[c]]
            else:
                # Nothing specific asked: one representative item per category.
                chosen = [items[0] for items in self._items.values() if items]
        return chosen[: self.max_items]

    def enrich(self, message: str) -> str:
        """Context block for the prompt, or "" when nothing is available."""
        try:
            items = self.select(message)
            parts: List[str] = []
            if self.owner_text:
                parts.append(self.owner_text)
            if items:
                parts.append(CONTEXT_HEADER)
                parts.extend(i.render() for i in items)
            return "\n".join(parts)
        except Exception as e:  # enrichment is best-effort
            logger.exception("Error enriching chat context: %s", e)
            return ""
