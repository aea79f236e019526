from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote, urldefrag, urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup, Comment
from jinja2 import Environment, FileSystemLoader, select_autoescape

from archive_store import ArchiveStore, CaptureTooLargeError, InvalidInputError, NotFoundError, VersionRef
from capmap import HtmlIndexEntry, PageSnapshot


BASE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = BASE_DIR / "templates"

DEFAULT_MAX_BYTES = 5 * 1024 * 1024
MODES = ("full", "structure")

STRIPPED_TAGS = ("script", "iframe", "embed", "object", "base")
URL_ATTRS = ("href", "src", "action", "formaction")
FORM_TARGET_ATTRS = ("action", "formaction")
PASSTHROUGH_PREFIXES = ("#", "data:", "mailto:", "tel:")
EVENT_ATTR_RE = re.compile(r"^on[a-z]+$", re.IGNORECASE)
META_REFRESH_RE = re.compile(r"^\s*refresh\s*$", re.IGNORECASE)
SCHEME_NOISE_RE = re.compile(r"[\x00-\x20]+")
SCRIPT_SCHEMES = ("javascript:", "vbscript:")
DEFAULT_PORTS = {"http": 80, "https": 443}
PATH_SAFE_CHARS = "/%:@!$&'()*+,;="
QUERY_SAFE_CHARS = PATH_SAFE_CHARS + "?"

MIRROR_CSP = "script-src 'none'; object-src 'none'; base-uri 'none'; form-action 'none'; frame-ancestors 'self'"
MIRROR_HEADERS = {
    "Content-Security-Policy": MIRROR_CSP,
    "X-Frame-Options": "SAMEORIGIN",
    "X-Content-Type-Options": "nosniff",
}

MIRROR_BAR_HTML = (
    '<div data-mirror-bar="true" style="position:fixed;top:0;left:0;right:0;height:3px;'
    'background:linear-gradient(90deg,#3b82f6,#60a5fa);z-index:999999"></div>'
    '<div data-mirror-bar="true" style="position:fixed;top:3px;right:8px;background:#1e293b;'
    'color:#94a3b8;font:11px/1.5 system-ui;padding:2px 8px;border-radius:0 0 4px 4px;'
    'z-index:999999;opacity:0.8">Mirror View</div>'
)

ROLE_CLASSES = {
    "link": "role-link",
    "button": "role-button",
    "textbox": "role-textbox",
    "searchbox": "role-searchbox",
    "combobox": "role-combobox",
    "heading": "role-heading",
    "navigation": "role-navigation",
    "nav": "role-navigation",
    "img": "role-img",
    "image": "role-image",
    "list": "role-list",
    "listitem": "role-listitem",
    "group": "role-group",
    "generic": "role-generic",
}
TREE_LINE_RE = re.compile(r'^-\s+(\w+)(?:\s+"([^"]*)")?(?:\s*(.*))?')
MAX_ELEMENTS = 100

_templates = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


def _compact_scheme(value: str) -> str:
    return SCHEME_NOISE_RE.sub("", value).lower()


def normalize_url(url: str) -> Optional[str]:
    """Canonical spelling of an absolute http(s) URL: lowercase scheme and
    host, no default port, percent-encoded path and query.

    Returns ``None`` for anything that is not an absolute http(s) URL.
    """
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if scheme not in ("http", "https") or not host:
        return None
    if ":" in host:
        host = f"[{host}]"
    netloc = host if port is None or DEFAULT_PORTS[scheme] == port else f"{host}:{port}"
    path = quote(parts.path or "/", safe=PATH_SAFE_CHARS)
    query = quote(parts.query, safe=QUERY_SAFE_CHARS)
    return urlunsplit((scheme, netloc, path, query, parts.fragment))


def _origin(url: str) -> Optional[str]:
    normalized = normalize_url(url)
    if normalized is None:
        return None
    parts = urlsplit(normalized)
    return f"{parts.scheme}://{parts.netloc}"


def _attached(tag, root) -> bool:
    return any(parent is root for parent in tag.parents)


def _alternate_slash(url: str) -> str:
    return url[:-1] if url.endswith("/") else url + "/"


def _lookup(url_to_index: Dict[str, int], url: str) -> Optional[int]:
    if url in url_to_index:
        return url_to_index[url]
    return url_to_index.get(_alternate_slash(url))


class MirrorRewriter:
    """Sanitize a captured page for iframe display and point its links back
    into the archive."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self.max_bytes = max_bytes

    def rewrite(
        self,
        html: str,
        page_url: str,
        site_id: str,
        html_index: Iterable[HtmlIndexEntry],
        version: Optional[str] = None,
    ) -> str:
        size = len(html.encode("utf-8"))
        if size > self.max_bytes:
            raise CaptureTooLargeError(size, self.max_bytes)

        soup = BeautifulSoup(html, "html.parser")
        self._strip_elements(soup)
        self._strip_handlers(soup)

        origin = _origin(page_url or "")
        if origin is not None:
            url_to_index: Dict[str, int] = {}
            for entry in html_index:
                key = normalize_url(entry.url)
                if key is not None:
                    url_to_index.setdefault(urldefrag(key)[0], entry.index)
            for tag in soup.find_all(href=True):
                self._rewrite_href(tag, origin, site_id, url_to_index, version)

        for attr in FORM_TARGET_ATTRS:
            for tag in soup.find_all(attrs={attr: True}):
                tag[attr] = "#"

        self._inject_mirror_bar(soup)
        return str(soup)

    def _strip_elements(self, soup: BeautifulSoup) -> None:
        doomed = soup.find_all(STRIPPED_TAGS)
        doomed += soup.find_all("meta", attrs={"http-equiv": META_REFRESH_RE})
        for tag in doomed:
            if not _attached(tag, soup):
                continue
            label = "meta refresh" if tag.name == "meta" else tag.name
            tag.replace_with(Comment(f" {label} removed "))

    def _strip_handlers(self, soup: BeautifulSoup) -> None:
        for tag in soup.find_all(True):
            for attr in list(tag.attrs):
                if EVENT_ATTR_RE.match(attr):
                    del tag[attr]
            for attr in URL_ATTRS:
                value = tag.get(attr)
                if not isinstance(value, str):
                    continue
                if _compact_scheme(value).startswith(SCRIPT_SCHEMES):
                    if attr == "src":
                        del tag[attr]
                    else:
                        tag[attr] = "#"

    def _rewrite_href(
        self,
        tag,
        origin: str,
        site_id: str,
        url_to_index: Dict[str, int],
        version: Optional[str],
    ) -> None:
        href = tag.get("href")
        if not isinstance(href, str):
            return
        value = href.strip()
        lowered = _compact_scheme(value)
        if not value or lowered.startswith(PASSTHROUGH_PREFIXES):
            return

        absolute = normalize_url(urljoin(origin + "/", value))
        if absolute is None:
            return
        if _origin(absolute) != origin:
            tag["href"] = absolute
            tag["target"] = "_blank"
            tag["rel"] = "noopener noreferrer"
            return

        target, fragment = urldefrag(absolute)
        index = _lookup(url_to_index, target)
        if index is None:
            tag["href"] = "#"
            tag["data-mirror-missing"] = "true"
            tag["title"] = "Page not captured"
            return

        address = f"/api/sites/{site_id}/mirror/{index}"
        if version:
            address += f"?version={version}"
        if fragment:
            address += f"#{fragment}"
        tag["href"] = address
        if tag.get("target") not in (None, "_self"):
            del tag["target"]

    def _inject_mirror_bar(self, soup: BeautifulSoup) -> None:
        fragment = BeautifulSoup(MIRROR_BAR_HTML, "html.parser")
        container = soup.find("body") or soup
        for offset, node in enumerate(list(fragment.contents)):
            container.insert(offset, node.extract())


def parse_tree_line(line: str) -> Dict[str, object]:
    stripped = line.strip()
    indent = len(line) - len(line.lstrip())
    depth = indent // 2
    match = TREE_LINE_RE.match(stripped)
    if not match:
        return {"depth": depth, "role": "", "name": "", "extra": "", "text": stripped, "role_class": ""}
    role = match.group(1)
    return {
        "depth": depth,
        "role": role,
        "name": match.group(2) or "",
        "extra": (match.group(3) or "").strip(),
        "text": "",
        "role_class": ROLE_CLASSES.get(role.lower(), "role-generic"),
    }


def parse_tree(snapshot: Optional[str]) -> List[Dict[str, object]]:
    if not snapshot:
        return []
    return [parse_tree_line(line) for line in snapshot.split("\n") if line.strip()]


def render_structure_view(snapshot: PageSnapshot) -> str:
    elements = snapshot.interactive_elements
    return _templates.get_template("structure_view.html").render(
        title=snapshot.title or snapshot.url,
        tree=parse_tree(snapshot.snapshot),
        has_tree=bool(snapshot.snapshot),
        forms=snapshot.forms,
        elements=elements[:MAX_ELEMENTS],
        element_count=len(elements),
        hidden_elements=max(0, len(elements) - MAX_ELEMENTS),
    )


class MirrorRenderer:
    def __init__(self, store: ArchiveStore, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self.store = store
        self.rewriter = MirrorRewriter(max_bytes=max_bytes)

    @property
    def max_bytes(self) -> int:
        return self.rewriter.max_bytes

    def page_index(self, site_id: str, version: Optional[str] = None) -> List[Dict[str, object]]:
        ref = self.store.require_version(site_id, version)
        return [entry.to_dict() for entry in self.store.html_index(ref)]

    def render(self, site_id: str, page_index: int, version: Optional[str] = None, mode: str = "full") -> str:
        if mode not in MODES:
            raise InvalidInputError(f"Unknown mirror mode. Expected one of: {', '.join(MODES)}.")
        ref = self.store.require_version(site_id, version)
        if mode == "structure":
            return render_structure_view(self._find_snapshot(ref, page_index))

        html_index = self.store.html_index(ref)
        entry = next((e for e in html_index if e.index == page_index), None)
        if entry is None:
            raise NotFoundError()
        html = self.store.read_html_page(ref, page_index, max_bytes=self.max_bytes)
        return self.rewriter.rewrite(html, entry.url, site_id, html_index, version=version)

    def _find_snapshot(self, ref: VersionRef, page_index: int) -> PageSnapshot:
        snapshots = self.store.page_snapshots(ref)
        entry = next((e for e in self.store.html_index(ref) if e.index == page_index), None)
        if entry is not None:
            by_url: Dict[str, Tuple[int, PageSnapshot]] = {}
            for position, snap in enumerate(snapshots):
                by_url.setdefault(snap.url, (position, snap))
            found = by_url.get(entry.url) or by_url.get(_alternate_slash(entry.url))
            if found is not None:
                return found[1]
        if 0 <= page_index < len(snapshots):
            return snapshots[page_index]
        raise NotFoundError()
