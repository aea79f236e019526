from __future__ import annotations

import json
import logging
import os
import re
import threading
from concurrent.futures import Future, wait
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from archive_store import ArchiveStore


logger = logging.getLogger(__name__)

STRIP_CHARS_RE = re.compile(r"[^a-z0-9\s\-_./]")
SPLIT_RE = re.compile(r"[\s\-_./]+")
MIN_TOKEN_LENGTH = 2
DEFAULT_LIMIT = 50
MAX_LIMIT = 200

NAME_WEIGHT = 3.0
DESCRIPTION_WEIGHT = 1.0
URL_WEIGHT = 0.5
EXACT_NAME_BONUS = 10.0

STATE_UNBUILT = "unbuilt"
STATE_BUILDING = "building"
STATE_READY = "ready"


def tokenize(text: str) -> List[str]:
    cleaned = STRIP_CHARS_RE.sub(" ", (text or "").lower())
    return [token for token in SPLIT_RE.split(cleaned) if len(token) >= MIN_TOKEN_LENGTH]


@dataclass
class IndexEntry:
    siteId: str
    siteUrl: str
    siteTitle: str
    capIndex: int
    name: str
    type: str
    description: str
    pageUrl: str
    authentication: str

    @classmethod
    def from_dict(cls, raw: Any) -> "IndexEntry":
        if not isinstance(raw, dict):
            raise ValueError("index entry must be an object")
        cap_index = raw.get("capIndex", 0)
        if isinstance(cap_index, bool) or not isinstance(cap_index, int):
            raise ValueError("capIndex must be an integer")
        values = {}
        for key in ("siteId", "siteUrl", "siteTitle", "name", "type", "description", "pageUrl", "authentication"):
            value = raw.get(key, "")
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise ValueError(f"{key} must be a string")
            values[key] = value
        return cls(capIndex=cap_index, **values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class InvertedIndex:
    entries: List[IndexEntry]
    tokens: Dict[str, List[int]] = field(default_factory=dict)
    bySite: Dict[str, Set[int]] = field(default_factory=dict)
    byType: Dict[str, Set[int]] = field(default_factory=dict)
    byAuth: Dict[str, Set[int]] = field(default_factory=dict)

    @classmethod
    def build(cls, entries: List[IndexEntry]) -> "InvertedIndex":
        index = cls(entries=list(entries))
        for position, entry in enumerate(index.entries):
            seen = set()
            for token in tokenize(entry.name) + tokenize(entry.description) + tokenize(entry.pageUrl):
                if token in seen:
                    continue
                seen.add(token)
                index.tokens.setdefault(token, []).append(position)
            index.bySite.setdefault(entry.siteId, set()).add(position)
            index.byType.setdefault(entry.type, set()).add(position)
            if entry.authentication:
                index.byAuth.setdefault(entry.authentication, set()).add(position)
        return index


def score_entry(entry: IndexEntry, query_tokens: List[str], raw_query: str) -> float:
    name = entry.name.lower()
    description = entry.description.lower()
    page_url = entry.pageUrl.lower()
    score = 0.0
    for token in query_tokens:
        if token in name:
            score += NAME_WEIGHT
        if token in description:
            score += DESCRIPTION_WEIGHT
        if token in page_url:
            score += URL_WEIGHT
    if raw_query.lower() in name:
        score += EXACT_NAME_BONUS
    return score


def _empty_response(query: str) -> Dict[str, Any]:
    return {"results": [], "facets": {"sites": {}, "types": {}}, "total": 0, "query": query}


class SearchIndex:
    """Lazily built, persisted inverted index over every site's latest map.

    One build runs at a time. Callers that arrive while a build is in flight
    wait on the same future instead of starting another scan.
    """

    def __init__(self, store: ArchiveStore, index_path: Optional[Path] = None) -> None:
        self.store = store
        self.index_path = Path(index_path) if index_path is not None else store.index_path
        self._lock = threading.Lock()
        self._index: Optional[InvertedIndex] = None
        self._pending: Optional[Future] = None
        self._pending_is_rebuild = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._pending is not None:
                return STATE_BUILDING
            if self._index is not None:
                return STATE_READY
            return STATE_UNBUILT

    @property
    def entry_count(self) -> int:
        with self._lock:
            return len(self._index.entries) if self._index is not None else 0

    def get_or_build(self) -> InvertedIndex:
        with self._lock:
            if self._index is not None and self._pending is None:
                return self._index
            pending = self._pending
            if pending is None:
                pending = self._pending = Future()
                self._pending_is_rebuild = False
                owner = True
            else:
                owner = False
        if not owner:
            return pending.result()
        return self._run_build(pending, self._load_or_scan)

    def rebuild(self) -> Dict[str, int]:
        while True:
            with self._lock:
                pending = self._pending
                if pending is None:
                    pending = self._pending = Future()
                    self._pending_is_rebuild = True
                    break
                joining = self._pending_is_rebuild
            if joining:
                index = pending.result()
                return {"entryCount": len(index.entries)}
            wait([pending])
        index = self._run_build(pending, self._scan_and_persist)
        return {"entryCount": len(index.entries)}

    def _run_build(self, pending: Future, builder) -> InvertedIndex:
        try:
            index = builder()
        except Exception as exc:
            with self._lock:
                self._pending = None
            pending.set_exception(exc)
            raise
        with self._lock:
            self._index = index
            self._pending = None
        pending.set_result(index)
        return index

    def _load_or_scan(self) -> InvertedIndex:
        entries = self._load_persisted()
        if entries is not None:
            logger.info("Loaded search index with %d entries from %s", len(entries), self.index_path)
            return InvertedIndex.build(entries)
        return self._scan_and_persist()

    def _scan_and_persist(self) -> InvertedIndex:
        entries = self.collect_entries()
        logger.info("Built search index with %d entries", len(entries))
        self._persist(entries)
        return InvertedIndex.build(entries)

    def collect_entries(self) -> List[IndexEntry]:
        entries: List[IndexEntry] = []
        for site_id, site_map in self.store.latest_maps():
            for position, cap in enumerate(site_map.capabilities):
                entries.append(
                    IndexEntry(
                        siteId=site_id,
                        siteUrl=site_map.url,
                        siteTitle=site_map.title or site_id,
                        capIndex=position,
                        name=cap.name,
                        type=cap.type,
                        description=cap.description,
                        pageUrl=cap.page_url,
                        authentication=cap.authentication,
                    )
                )
        return entries

    def _load_persisted(self) -> Optional[List[IndexEntry]]:
        try:
            raw = json.loads(self.index_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable search index %s: %s", self.index_path, exc)
            return None
        if not isinstance(raw, dict) or not isinstance(raw.get("entries"), list):
            logger.warning("Ignoring malformed search index %s", self.index_path)
            return None
        try:
            return [IndexEntry.from_dict(item) for item in raw["entries"]]
        except ValueError as exc:
            logger.warning("Ignoring malformed search index %s: %s", self.index_path, exc)
            return None

    def _persist(self, entries: List[IndexEntry]) -> bool:
        tmp_path = self.index_path.with_name(f"{self.index_path.name}.tmp.{os.getpid()}")
        payload = json.dumps({"entries": [entry.to_dict() for entry in entries]}, separators=(",", ":"))
        try:
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self.index_path)
        except OSError as exc:
            logger.warning("Could not persist search index to %s: %s", self.index_path, exc)
            try:
                tmp_path.unlink()
            except OSError:
                pass
            return False
        logger.info("Persisted search index (%d entries) to %s", len(entries), self.index_path)
        return True

    def search(
        self,
        q: str,
        *,
        cap_type: Optional[str] = None,
        site: Optional[str] = None,
        auth: Optional[str] = None,
        url_pattern: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Dict[str, Any]:
        query = q or ""
        query_tokens = tokenize(query)
        if not query_tokens:
            return _empty_response(query)
        limit = DEFAULT_LIMIT if limit is None else max(0, min(int(limit), MAX_LIMIT))
        offset = max(0, int(offset or 0))

        index = self.get_or_build()

        matched: Dict[int, int] = {}
        for token in dict.fromkeys(query_tokens):
            for position in index.tokens.get(token, ()):
                matched[position] = matched.get(position, 0) + 1
        candidates = list(matched)

        for value, facet in ((cap_type, index.byType), (site, index.bySite), (auth, index.byAuth)):
            if not value:
                continue
            allowed = facet.get(value)
            candidates = [i for i in candidates if i in allowed] if allowed else []

        if url_pattern:
            pattern = url_pattern.lower()
            candidates = [i for i in candidates if pattern in index.entries[i].pageUrl.lower()]

        scored = [(index.entries[i], score_entry(index.entries[i], query_tokens, query)) for i in candidates]
        scored.sort(key=lambda item: item[1], reverse=True)

        sites: Dict[str, int] = {}
        types: Dict[str, int] = {}
        for entry, _score in scored:
            sites[entry.siteId] = sites.get(entry.siteId, 0) + 1
            types[entry.type] = types.get(entry.type, 0) + 1

        page = scored[offset:offset + limit]
        return {
            "results": [dict(entry.to_dict(), score=score) for entry, score in page],
            "facets": {"sites": sites, "types": types},
            "total": len(scored),
            "query": query,
        }
