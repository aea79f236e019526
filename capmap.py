from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


CAPABILITY_TYPES = ("form", "search", "navigation", "api", "action", "download")


class CorruptDataError(ValueError):
    pass


def _require_dict(value: Any, what: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise CorruptDataError(f"{what} must be an object")
    return value


def _list_of(payload: Dict[str, Any], key: str) -> List[Any]:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise CorruptDataError(f"{key} must be a list")
    return value


def _text(payload: Dict[str, Any], key: str, default: str = "") -> str:
    value = payload.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise CorruptDataError(f"{key} must be a string")
    return value


def _number(payload: Dict[str, Any], key: str, default: float = 0.0) -> float:
    value = payload.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise CorruptDataError(f"{key} must be a number")
    return float(value)


def _flag(payload: Dict[str, Any], key: str) -> bool:
    return bool(payload.get(key) or False)


def _auth_text(payload: Dict[str, Any]) -> str:
    # Older maps carry a requiresAuth boolean instead of an authentication kind.
    value = payload.get("authentication")
    if isinstance(value, str):
        return value
    if value is None and payload.get("requiresAuth") is True:
        return "required"
    if value is None:
        return ""
    raise CorruptDataError("authentication must be a string")


@dataclass
class Parameter:
    name: str
    type: str = ""
    required: bool = False
    description: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "Parameter":
        data = _require_dict(raw, "parameter")
        return cls(
            name=_text(data, "name"),
            type=_text(data, "type"),
            required=_flag(data, "required"),
            description=_text(data, "description"),
        )


@dataclass
class Capability:
    name: str
    type: str
    description: str = ""
    confidence: float = 0.0
    authentication: str = ""
    page_url: str = ""
    inputs: List[Parameter] = field(default_factory=list)
    outputs: List[Parameter] = field(default_factory=list)

    @property
    def is_known_type(self) -> bool:
        return self.type in CAPABILITY_TYPES

    @classmethod
    def from_dict(cls, raw: Any) -> "Capability":
        data = _require_dict(raw, "capability")
        return cls(
            name=_text(data, "name"),
            type=_text(data, "type"),
            description=_text(data, "description"),
            confidence=_number(data, "confidence"),
            authentication=_auth_text(data),
            page_url=_text(data, "pageUrl") or _text(data, "page"),
            inputs=[Parameter.from_dict(p) for p in _list_of(data, "inputs")],
            outputs=[Parameter.from_dict(p) for p in _list_of(data, "outputs")],
        )


@dataclass
class Page:
    url: str
    title: str = ""
    index: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Any) -> "Page":
        if isinstance(raw, str):
            return cls(url=raw)
        data = _require_dict(raw, "page")
        index = data.get("index")
        return cls(
            url=_text(data, "url"),
            title=_text(data, "title"),
            index=index if isinstance(index, int) and not isinstance(index, bool) else None,
        )


@dataclass
class ApiEndpoint:
    url: str
    method: str = "GET"
    content_type: str = ""
    discovered_from: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "ApiEndpoint":
        data = _require_dict(raw, "api endpoint")
        return cls(
            url=_text(data, "url"),
            method=_text(data, "method", "GET") or "GET",
            content_type=_text(data, "contentType"),
            discovered_from=_text(data, "discoveredFrom"),
        )


@dataclass
class AuthPattern:
    type: str
    description: str = ""
    page_url: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "AuthPattern":
        data = _require_dict(raw, "auth pattern")
        return cls(
            type=_text(data, "type"),
            description=_text(data, "description"),
            page_url=_text(data, "pageUrl") or _text(data, "url"),
        )


@dataclass
class CapabilityMap:
    """Analysis output of one crawled version of a site.

    ``raw`` keeps the decoded JSON document untouched; the API serves it
    as-is so fields this module does not model still reach the browser.
    """

    id: str
    url: str
    title: str
    description: str
    crawled_at: str
    capabilities: List[Capability]
    pages: List[Page]
    api_endpoints: List[ApiEndpoint]
    auth_patterns: List[AuthPattern]
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, raw: Any, site_id: str = "") -> "CapabilityMap":
        data = _require_dict(raw, "capability map")
        return cls(
            id=_text(data, "id") or site_id,
            url=_text(data, "url"),
            title=_text(data, "title") or site_id,
            description=_text(data, "description"),
            crawled_at=_text(data, "crawledAt"),
            capabilities=[Capability.from_dict(c) for c in _list_of(data, "capabilities")],
            pages=[Page.from_dict(p) for p in _list_of(data, "pages")],
            api_endpoints=[ApiEndpoint.from_dict(e) for e in _list_of(data, "apiEndpoints")],
            auth_patterns=[AuthPattern.from_dict(a) for a in _list_of(data, "authPatterns")],
            raw=data,
        )

    def type_distribution(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for cap in self.capabilities:
            counts[cap.type] = counts.get(cap.type, 0) + 1
        return counts


@dataclass
class HtmlIndexEntry:
    index: int
    url: str
    source: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "HtmlIndexEntry":
        data = _require_dict(raw, "html index entry")
        index = data.get("index")
        if isinstance(index, bool) or not isinstance(index, int):
            raise CorruptDataError("index must be an integer")
        return cls(index=index, url=_text(data, "url"), source=_text(data, "source"))

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "url": self.url, "source": self.source}


@dataclass
class FormField:
    name: str = ""
    type: str = ""
    required: bool = False
    label: str = ""
    placeholder: str = ""
    options: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any) -> "FormField":
        data = _require_dict(raw, "form field")
        return cls(
            name=_text(data, "name"),
            type=_text(data, "type"),
            required=_flag(data, "required"),
            label=_text(data, "label"),
            placeholder=_text(data, "placeholder"),
            options=[str(o) for o in _list_of(data, "options")],
        )


@dataclass
class FormInfo:
    action: str = ""
    method: str = "get"
    purpose: str = ""
    fields: List[FormField] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any) -> "FormInfo":
        data = _require_dict(raw, "form")
        return cls(
            action=_text(data, "action"),
            method=(_text(data, "method") or "get").lower(),
            purpose=_text(data, "purpose"),
            fields=[FormField.from_dict(f) for f in _list_of(data, "fields")],
        )


@dataclass
class InteractiveElement:
    role: str = ""
    name: str = ""
    description: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "InteractiveElement":
        data = _require_dict(raw, "interactive element")
        return cls(
            role=_text(data, "role"),
            name=_text(data, "name"),
            description=_text(data, "description"),
        )


@dataclass
class PageSnapshot:
    url: str = ""
    title: str = ""
    snapshot: Optional[str] = None
    forms: List[FormInfo] = field(default_factory=list)
    interactive_elements: List[InteractiveElement] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any) -> "PageSnapshot":
        data = _require_dict(raw, "page snapshot")
        tree = data.get("snapshot")
        return cls(
            url=_text(data, "url"),
            title=_text(data, "title"),
            snapshot=tree if isinstance(tree, str) else None,
            forms=[FormInfo.from_dict(f) for f in _list_of(data, "forms")],
            interactive_elements=[InteractiveElement.from_dict(e) for e in _list_of(data, "interactiveElements")],
        )
