from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from capmap import CapabilityMap, CorruptDataError, HtmlIndexEntry, PageSnapshot


logger = logging.getLogger(__name__)

SITE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
VERSION_TOKEN_RE = re.compile(r"^v([1-9][0-9]*)$")
SCREENSHOT_NAME_RE = re.compile(r"^(?!\.+$)[A-Za-z0-9._-]+$")
API_RESOURCE_TYPES = {"xhr", "fetch"}
RECENT_CRAWLS_LIMIT = 10
MISSING_FILE_ERRORS = (FileNotFoundError, NotADirectoryError, IsADirectoryError)


class ArchiveError(Exception):
    pass


class NotFoundError(ArchiveError):
    def __init__(self, message: str = "Not found") -> None:
        super().__init__(message)


class PathBlockedError(NotFoundError):
    pass


class InvalidInputError(ArchiveError):
    pass


class InvalidVersionError(InvalidInputError):
    def __init__(self, token: str) -> None:
        super().__init__("Invalid version. Expected the form v<number>, e.g. v3.")
        self.token = token


class CaptureTooLargeError(ArchiveError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Captured page is too large to mirror ({size} bytes, limit {limit}).")
        self.size = size
        self.limit = limit


@dataclass(frozen=True)
class VersionRef:
    site_id: str
    number: int
    path: Path

    @property
    def name(self) -> str:
        return f"v{self.number}"

    @property
    def raw_dir(self) -> Path:
        return self.path / "raw"

    @property
    def analysis_path(self) -> Path:
        return self.path / "analysis" / "sitemap.json"


def _strictly_within(base: Path, candidate: Path) -> bool:
    return base in candidate.parents


def _log_blocked(base: Path, candidate: Path) -> None:
    # Filesystem layout stays out of anything above debug level.
    logger.warning("Blocked a path outside the archive root")
    logger.debug("Blocked path outside %s: %s", base, candidate)


def require_safe_path(candidate: Path, base_dir: Path) -> Path:
    """Return the canonical form of ``candidate`` if it stays below ``base_dir``.

    Raises ``PathBlockedError`` for anything that escapes the base, and
    ``NotFoundError`` for legitimately missing files. Both carry the same
    generic message.
    """
    try:
        base = Path(base_dir).resolve(strict=True)
    except MISSING_FILE_ERRORS:
        raise NotFoundError() from None

    try:
        resolved = Path(candidate).resolve(strict=True)
    except MISSING_FILE_ERRORS:
        # Missing target: fold "." and ".." lexically and compare against the
        # base in both its canonical and its as-given spelling.
        normalized = Path(os.path.normpath(os.path.abspath(candidate)))
        lexical_base = Path(os.path.normpath(os.path.abspath(base_dir)))
        if not (_strictly_within(base, normalized) or _strictly_within(lexical_base, normalized)):
            _log_blocked(base, candidate)
            raise PathBlockedError() from None
        raise NotFoundError() from None

    if not _strictly_within(base, resolved):
        _log_blocked(base, candidate)
        raise PathBlockedError()
    return resolved


def safe_read_bytes(candidate: Path, base_dir: Path, max_bytes: Optional[int] = None) -> bytes:
    path = require_safe_path(candidate, base_dir)
    if max_bytes is not None:
        size = path.stat().st_size
        if size > max_bytes:
            raise CaptureTooLargeError(size, max_bytes)
    try:
        return path.read_bytes()
    except MISSING_FILE_ERRORS:
        raise NotFoundError() from None


def _read_json(path: Path) -> Optional[Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except MISSING_FILE_ERRORS:
        return None
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.debug("Skipping unparseable JSON %s: %s", path, exc)
        return None


def _host_key(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host


class ArchiveStore:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self.sites_dir = self.data_dir / "sites"
        self.index_path = self.data_dir / "search-index.json"

    # -- sites and versions -------------------------------------------------

    def site_dir(self, site_id: str) -> Optional[Path]:
        if not SITE_ID_RE.match(site_id or ""):
            return None
        return self.sites_dir / site_id

    def list_site_ids(self) -> List[str]:
        try:
            names = sorted(entry.name for entry in self.sites_dir.iterdir() if entry.is_dir())
        except MISSING_FILE_ERRORS:
            return []
        return [name for name in names if SITE_ID_RE.match(name)]

    def list_version_numbers(self, site_id: str) -> List[int]:
        site_dir = self.site_dir(site_id)
        if site_dir is None:
            return []
        try:
            entries = list((site_dir / "versions").iterdir())
        except MISSING_FILE_ERRORS:
            return []
        numbers = []
        for entry in entries:
            match = VERSION_TOKEN_RE.match(entry.name)
            if match and entry.is_dir():
                numbers.append(int(match.group(1)))
        return sorted(numbers, reverse=True)

    def resolve_version(self, site_id: str, version_token: Optional[str] = None) -> Optional[VersionRef]:
        if version_token:
            match = VERSION_TOKEN_RE.match(version_token)
            if not match:
                raise InvalidVersionError(version_token)
        site_dir = self.site_dir(site_id)
        if site_dir is None or not site_dir.is_dir():
            return None

        if version_token:
            number = int(match.group(1))
            path = site_dir / "versions" / f"v{number}"
            if not path.is_dir():
                return None
            return VersionRef(site_id, number, path)

        numbers = self.list_version_numbers(site_id)
        if not numbers:
            return None
        return VersionRef(site_id, numbers[0], site_dir / "versions" / f"v{numbers[0]}")

    def require_version(self, site_id: str, version_token: Optional[str] = None) -> VersionRef:
        ref = self.resolve_version(site_id, version_token)
        if ref is None:
            raise NotFoundError()
        return ref

    # -- capability maps ----------------------------------------------------

    def _parse_map(self, ref: VersionRef) -> Optional[CapabilityMap]:
        raw = _read_json(ref.analysis_path)
        if raw is None:
            return None
        try:
            return CapabilityMap.from_dict(raw, site_id=ref.site_id)
        except CorruptDataError as exc:
            logger.debug("Skipping malformed analysis for %s %s: %s", ref.site_id, ref.name, exc)
            return None

    def load_capability_map(self, site_id: str, version: Optional[str] = None) -> Optional[CapabilityMap]:
        if version:
            ref = self.resolve_version(site_id, version)
            if ref is None:
                return None
            return self._parse_map(ref)

        site_dir = self.site_dir(site_id)
        if site_dir is None:
            return None
        for number in self.list_version_numbers(site_id):
            found = self._parse_map(VersionRef(site_id, number, site_dir / "versions" / f"v{number}"))
            if found is not None:
                return found
        return None

    def load_version_maps(self, site_id: str) -> List[tuple[VersionRef, CapabilityMap]]:
        site_dir = self.site_dir(site_id)
        if site_dir is None:
            return []
        out = []
        for number in sorted(self.list_version_numbers(site_id)):
            ref = VersionRef(site_id, number, site_dir / "versions" / f"v{number}")
            site_map = self._parse_map(ref)
            if site_map is not None:
                out.append((ref, site_map))
        return out

    def list_versions(self, site_id: str) -> List[Dict[str, Any]]:
        return [
            {"version": ref.number, "crawledAt": site_map.crawled_at}
            for ref, site_map in self.load_version_maps(site_id)
        ]

    def timeline(self, site_id: str) -> List[Dict[str, Any]]:
        return [
            {
                "version": ref.number,
                "date": site_map.crawled_at,
                "capabilityCount": len(site_map.capabilities),
                "pageCount": len(site_map.pages),
                "apiEndpointCount": len(site_map.api_endpoints),
                "typeDistribution": site_map.type_distribution(),
            }
            for ref, site_map in self.load_version_maps(site_id)
        ]

    def list_sites(self) -> List[Dict[str, Any]]:
        sites = []
        for site_id in self.list_site_ids():
            site_map = self.load_capability_map(site_id)
            if site_map is None:
                continue
            sites.append(
                {
                    "id": site_map.id or site_id,
                    "url": site_map.url,
                    "title": site_map.title or site_id,
                    "description": site_map.description,
                    "capabilityCount": len(site_map.capabilities),
                    "pageCount": len(site_map.pages),
                    "apiEndpointCount": len(site_map.api_endpoints),
                    "crawledAt": site_map.crawled_at,
                    "versions": len(self.list_versions(site_id)),
                    "typeDistribution": site_map.type_distribution(),
                }
            )
        return sites

    def latest_maps(self) -> List[tuple[str, CapabilityMap]]:
        out = []
        for site_id in self.list_site_ids():
            site_map = self.load_capability_map(site_id)
            if site_map is not None:
                out.append((site_id, site_map))
        return out

    def stats(self) -> Dict[str, int]:
        sites = self.list_sites()
        return {
            "totalSites": len(sites),
            "totalCapabilities": sum(int(s["capabilityCount"]) for s in sites),
            "totalPages": sum(int(s["pageCount"]) for s in sites),
        }

    def analytics_overview(self) -> Dict[str, Any]:
        total_caps = 0
        total_pages = 0
        total_versions = 0
        total_screenshots = 0
        caps_by_type: Dict[str, int] = {}
        ranking = []
        crawls = []
        for site_id in self.list_site_ids():
            versions = self.load_version_maps(site_id)
            if not versions:
                continue
            latest = versions[-1][1]
            total_caps += len(latest.capabilities)
            total_pages += len(latest.pages)
            total_versions += len(versions)
            for cap_type, count in latest.type_distribution().items():
                caps_by_type[cap_type] = caps_by_type.get(cap_type, 0) + count
            ranking.append({"id": latest.id or site_id, "title": latest.title or site_id, "count": len(latest.capabilities)})
            for ref, site_map in versions:
                total_screenshots += len(self.list_screenshots(ref)["pages"])
                crawls.append({"siteId": site_id, "version": ref.number, "date": site_map.crawled_at})

        ranking.sort(key=lambda s: s["count"], reverse=True)
        crawls.sort(key=lambda c: c["date"], reverse=True)
        return {
            "totalSites": len(ranking),
            "totalCapabilities": total_caps,
            "totalVersions": total_versions,
            "totalPages": total_pages,
            "totalScreenshots": total_screenshots,
            "capsByType": caps_by_type,
            "sitesByCapCount": ranking,
            "recentCrawls": crawls[:RECENT_CRAWLS_LIMIT],
        }

    def site_analytics(self, site_id: str) -> Optional[Dict[str, Any]]:
        versions = self.load_version_maps(site_id)
        if not versions:
            return None
        return {
            "siteId": site_id,
            "capsOverTime": [
                {
                    "version": ref.number,
                    "date": site_map.crawled_at,
                    "count": len(site_map.capabilities),
                    "types": site_map.type_distribution(),
                }
                for ref, site_map in versions
            ],
            "pagesOverTime": [
                {"version": ref.number, "date": site_map.crawled_at, "count": len(site_map.pages)}
                for ref, site_map in versions
            ],
            "apiEndpointsOverTime": [
                {"version": ref.number, "date": site_map.crawled_at, "count": len(site_map.api_endpoints)}
                for ref, site_map in versions
            ],
        }

    # -- raw artifacts ------------------------------------------------------

    def html_index(self, ref: VersionRef) -> List[HtmlIndexEntry]:
        raw = _read_json(ref.raw_dir / "html-index.json")
        if not isinstance(raw, list):
            return []
        entries = []
        for item in raw:
            try:
                entries.append(HtmlIndexEntry.from_dict(item))
            except CorruptDataError as exc:
                logger.debug("Skipping html index item in %s %s: %s", ref.site_id, ref.name, exc)
        return entries

    def read_html_page(self, ref: VersionRef, page_index: int, max_bytes: Optional[int] = None) -> str:
        site_dir = self.sites_dir / ref.site_id
        data = safe_read_bytes(ref.raw_dir / "html-pages" / f"{int(page_index)}.html", site_dir, max_bytes)
        for encoding in ("utf-8", "latin-1"):
            try:
                return data.decode(encoding)
            except UnicodeDecodeError:
                continue
        return data.decode("utf-8", errors="ignore")

    def page_snapshots(self, ref: VersionRef) -> List[PageSnapshot]:
        path = ref.raw_dir / "playwright.json"
        raw_bytes = safe_read_bytes(path, self.sites_dir / ref.site_id)
        try:
            raw = json.loads(raw_bytes.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.debug("Unparseable snapshot file for %s %s: %s", ref.site_id, ref.name, exc)
            return []
        if not isinstance(raw, dict) or not isinstance(raw.get("snapshots"), list):
            return []
        snapshots = []
        for item in raw["snapshots"]:
            try:
                snapshots.append(PageSnapshot.from_dict(item))
            except CorruptDataError as exc:
                logger.debug("Skipping snapshot in %s %s: %s", ref.site_id, ref.name, exc)
        return snapshots

    def screenshot_path(self, ref: VersionRef, filename: str) -> Path:
        if not SCREENSHOT_NAME_RE.match(filename or ""):
            raise NotFoundError()
        path = require_safe_path(ref.raw_dir / "screenshots" / filename, self.sites_dir / ref.site_id)
        if not path.is_file():
            raise NotFoundError()
        return path

    def list_screenshots(self, ref: VersionRef) -> Dict[str, Any]:
        urls = {entry.index: entry.url for entry in self.html_index(ref)}
        shots_dir = ref.raw_dir / "screenshots"
        indices = []
        try:
            for entry in shots_dir.iterdir():
                if entry.suffix.lower() == ".png" and entry.stem.isdigit():
                    indices.append(int(entry.stem))
        except MISSING_FILE_ERRORS:
            pass
        pages = [
            {
                "index": index,
                "url": urls.get(index, ""),
                "screenshotUrl": f"/api/sites/{ref.site_id}/screenshot/{index}.png?version={ref.name}",
            }
            for index in sorted(indices)
        ]
        return {"version": ref.name, "pages": pages}

    def network(self, ref: VersionRef) -> Dict[str, Any]:
        out: Dict[str, Any] = {"version": ref.name, "apis": [], "resources": [], "thirdParty": []}
        raw = _read_json(ref.raw_dir / "network.json")
        if not isinstance(raw, dict) or not isinstance(raw.get("requests"), list):
            return out

        site_map = self._parse_map(ref) or self.load_capability_map(ref.site_id)
        site_host = _host_key(site_map.url) if site_map is not None else ""
        if not site_host:
            index = self.html_index(ref)
            site_host = _host_key(index[0].url) if index else ""

        for item in raw["requests"]:
            if not isinstance(item, dict) or not isinstance(item.get("url"), str):
                continue
            resource_type = str(item.get("resourceType") or "").lower()
            content_type = str(item.get("contentType") or item.get("mimeType") or "")
            row = {
                "url": item["url"],
                "method": str(item.get("method") or "GET").upper(),
                "status": item.get("status") or 0,
                "contentType": content_type,
                "resourceType": resource_type,
            }
            host = _host_key(item["url"])
            if site_host and host and host != site_host:
                out["thirdParty"].append(row)
            elif resource_type in API_RESOURCE_TYPES or "json" in content_type.lower():
                out["apis"].append(row)
            else:
                out["resources"].append(row)
        return out
