from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional


def capability(name: str, cap_type: str = "form", description: str = "", page_url: str = "", authentication: str = "") -> Dict[str, Any]:
    cap: Dict[str, Any] = {
        "name": name,
        "type": cap_type,
        "description": description,
        "confidence": 0.9,
        "pageUrl": page_url,
        "inputs": [{"name": "q", "type": "string", "required": True}],
        "outputs": [],
    }
    if authentication:
        cap["authentication"] = authentication
    return cap


def site_map(site_id: str, url: str, capabilities: List[Dict[str, Any]], crawled_at: str = "2024-01-01T00:00:00Z", **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": site_id,
        "url": url,
        "title": site_id.title(),
        "description": f"Capability map for {site_id}",
        "crawledAt": crawled_at,
        "capabilities": capabilities,
        "pages": [{"url": url + "/", "title": "Home"}],
        "apiEndpoints": [{"url": url + "/api/items", "method": "GET"}],
        "authPatterns": [],
    }
    payload.update(extra)
    return payload


def version_dir(data_dir: Path, site_id: str, number: int) -> Path:
    path = Path(data_dir) / "sites" / site_id / "versions" / f"v{number}"
    path.mkdir(parents=True, exist_ok=True)
    return path


def write_analysis(data_dir: Path, site_id: str, number: int, payload: Any) -> Path:
    """Write ``analysis/sitemap.json``; a ``str`` payload is written verbatim."""
    path = version_dir(data_dir, site_id, number) / "analysis" / "sitemap.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    text = payload if isinstance(payload, str) else json.dumps(payload)
    path.write_text(text, encoding="utf-8")
    return path


def write_raw(data_dir: Path, site_id: str, number: int, relative: str, content: Any) -> Path:
    path = version_dir(data_dir, site_id, number) / "raw" / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    elif isinstance(content, str):
        path.write_text(content, encoding="utf-8")
    else:
        path.write_text(json.dumps(content), encoding="utf-8")
    return path


def write_pages(data_dir: Path, site_id: str, number: int, pages: Dict[int, tuple[str, str]], source: str = "crawl") -> None:
    index = []
    for page_index, (url, html) in sorted(pages.items()):
        write_raw(data_dir, site_id, number, f"html-pages/{page_index}.html", html)
        index.append({"index": page_index, "url": url, "source": source})
    write_raw(data_dir, site_id, number, "html-index.json", index)


def build_default_archive(data_dir: Path, playwright: Optional[Dict[str, Any]] = None) -> None:
    write_analysis(
        data_dir,
        "shop",
        1,
        site_map(
            "shop",
            "https://shop.example",
            [
                capability("Login Form", "form", "Sign in with email and password", "https://shop.example/login", "required"),
                capability("Search Box", "search", "Search the product catalog", "https://shop.example/search"),
            ],
        ),
    )
    write_analysis(
        data_dir,
        "shop",
        2,
        site_map(
            "shop",
            "https://shop.example",
            [
                capability("Login Form", "form", "Sign in with email and password", "https://shop.example/login", "required"),
                capability("Search Box", "search", "Search the product catalog", "https://shop.example/search"),
                capability("Download Invoice", "download", "Download a PDF invoice after login", "https://shop.example/account/invoices", "required"),
            ],
            crawled_at="2024-02-01T00:00:00Z",
        ),
    )
    write_analysis(
        data_dir,
        "blog",
        1,
        site_map(
            "blog",
            "https://blog.example",
            [
                capability("Newsletter Signup", "form", "Subscribe with email", "https://blog.example/"),
                capability("Post Search", "search", "Full text search of posts", "https://blog.example/search"),
                capability("Comments API", "api", "JSON endpoint listing comments", "https://blog.example/api/comments"),
            ],
        ),
    )
    write_pages(
        data_dir,
        "shop",
        2,
        {
            0: ("https://shop.example/", '<html><body><a href="/login">Login</a><script>alert(1)</script></body></html>'),
            1: ("https://shop.example/login", '<html><body><form action="/session"><input name="email"></form></body></html>'),
        },
    )
    write_raw(data_dir, "shop", 2, "screenshots/0.png", b"\x89PNG\r\n\x1a\nfake")
    write_raw(data_dir, "shop", 2, "screenshots/1.png", b"\x89PNG\r\n\x1a\nfake")
    if playwright is not None:
        write_raw(data_dir, "shop", 2, "playwright.json", playwright)
