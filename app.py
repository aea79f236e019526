from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from flask import Blueprint, Flask, Response, current_app, jsonify, request, send_file
from werkzeug.exceptions import HTTPException

from archive_store import (
    ArchiveStore,
    CaptureTooLargeError,
    InvalidInputError,
    NotFoundError,
)
from mirror import DEFAULT_MAX_BYTES, MIRROR_HEADERS, MirrorRenderer
from search_index import DEFAULT_LIMIT, MAX_LIMIT, SearchIndex


logger = logging.getLogger(__name__)

DATA_DIR = Path(os.environ.get("WAYBACK_DATA_DIR", ".webmcp")).expanduser().resolve()
MIRROR_MAX_BYTES = int(os.environ.get("MIRROR_MAX_BYTES", str(DEFAULT_MAX_BYTES)))
SEARCH_DEFAULT_LIMIT = int(os.environ.get("SEARCH_DEFAULT_LIMIT", str(DEFAULT_LIMIT)))
SEARCH_MAX_LIMIT = min(MAX_LIMIT, int(os.environ.get("SEARCH_MAX_LIMIT", str(MAX_LIMIT))))

api = Blueprint("api", __name__, url_prefix="/api")


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_int(value: Optional[str], default: int, min_value: int, max_value: int) -> int:
    raw = (value or "").strip()
    try:
        num = int(raw)
    except ValueError:
        num = default
    return max(min_value, min(num, max_value))


def _error(message: str, status: int):
    return jsonify({"ok": False, "error": message}), status


def _store() -> ArchiveStore:
    return current_app.config["ARCHIVE_STORE"]


def _search_index() -> SearchIndex:
    return current_app.config["SEARCH_INDEX"]


def _mirror() -> MirrorRenderer:
    return current_app.config["MIRROR_RENDERER"]


def _version_arg() -> Optional[str]:
    return (request.args.get("version") or "").strip() or None


@api.errorhandler(NotFoundError)
def handle_not_found(_exc: NotFoundError):
    return _error("Not found", 404)


@api.errorhandler(InvalidInputError)
def handle_invalid_input(exc: InvalidInputError):
    return _error(str(exc), 400)


@api.errorhandler(CaptureTooLargeError)
def handle_too_large(exc: CaptureTooLargeError):
    return _error(str(exc), 413)


@api.errorhandler(Exception)
def handle_unexpected(exc: Exception):
    if isinstance(exc, HTTPException):
        return _error(exc.description or exc.name, exc.code or 500)
    logger.exception("Unhandled error serving %s", request.path)
    return _error("Internal server error", 500)


@api.get("/sites")
def list_sites():
    return jsonify(_store().list_sites())


@api.get("/sites/<site_id>")
def site_detail(site_id: str):
    site_map = _store().load_capability_map(site_id, _version_arg())
    if site_map is None:
        return _error("Site not found", 404)
    return jsonify(site_map.raw)


@api.get("/sites/<site_id>/versions")
def site_versions(site_id: str):
    return jsonify(_store().list_versions(site_id))


@api.get("/sites/<site_id>/timeline")
def site_timeline(site_id: str):
    return jsonify(_store().timeline(site_id))


@api.get("/sites/<site_id>/analytics")
def site_analytics(site_id: str):
    data = _store().site_analytics(site_id)
    if data is None:
        return _error("Site not found", 404)
    return jsonify(data)


@api.get("/sites/<site_id>/capabilities")
def site_capabilities(site_id: str):
    site_map = _store().load_capability_map(site_id)
    if site_map is None:
        return _error("Site not found", 404)
    caps = [c for c in site_map.raw.get("capabilities") or [] if isinstance(c, dict)]
    type_filter = request.args.get("type", "").strip()
    if type_filter:
        caps = [c for c in caps if c.get("type") == type_filter]
    q = request.args.get("q", "").strip().lower()
    if q:
        caps = [
            c for c in caps
            if q in str(c.get("name") or "").lower() or q in str(c.get("description") or "").lower()
        ]
    return jsonify(caps)


@api.get("/sites/<site_id>/screenshots")
def site_screenshots(site_id: str):
    ref = _store().require_version(site_id, _version_arg())
    return jsonify(_store().list_screenshots(ref))


@api.get("/sites/<site_id>/screenshot/<filename>")
def site_screenshot(site_id: str, filename: str):
    ref = _store().require_version(site_id, _version_arg())
    path = _store().screenshot_path(ref, filename)
    return send_file(path, mimetype="image/png")


@api.get("/sites/<site_id>/network")
def site_network(site_id: str):
    ref = _store().require_version(site_id, _version_arg())
    return jsonify(_store().network(ref))


@api.get("/sites/<site_id>/mirror/index")
def mirror_index(site_id: str):
    return jsonify(_mirror().page_index(site_id, _version_arg()))


@api.get("/sites/<site_id>/mirror/<int:page_index>")
def mirror_page(site_id: str, page_index: int):
    mode = (request.args.get("mode") or "full").strip().lower()
    html = _mirror().render(site_id, page_index, version=_version_arg(), mode=mode)
    response = Response(html, mimetype="text/html")
    response.headers.update(MIRROR_HEADERS)
    return response


@api.get("/stats")
def stats():
    return jsonify(_store().stats())


@api.get("/analytics/overview")
def analytics_overview():
    return jsonify(_store().analytics_overview())


@api.get("/search")
def search():
    if "q" not in request.args:
        return _error("Missing q parameter", 400)
    result = _search_index().search(
        request.args.get("q", ""),
        cap_type=request.args.get("type") or None,
        site=request.args.get("site") or None,
        auth=request.args.get("auth") or None,
        url_pattern=request.args.get("urlPattern") or None,
        limit=_parse_int(request.args.get("limit"), current_app.config["SEARCH_DEFAULT_LIMIT"], 1, current_app.config["SEARCH_MAX_LIMIT"]),
        offset=_parse_int(request.args.get("offset"), 0, 0, 1_000_000),
    )
    return jsonify(result)


@api.post("/search/rebuild")
def search_rebuild():
    result = _search_index().rebuild()
    logger.info("Search index rebuilt on request: %d entries", result["entryCount"])
    return jsonify({"ok": True, **result})


@api.get("/diagnostics")
def diagnostics():
    index = _search_index()
    return jsonify(
        {
            "ok": True,
            "config": {
                "data_dir": str(_store().data_dir),
                "mirror_max_bytes": _mirror().max_bytes,
                "search_default_limit": current_app.config["SEARCH_DEFAULT_LIMIT"],
                "search_max_limit": current_app.config["SEARCH_MAX_LIMIT"],
            },
            "search_index": {
                "state": index.state,
                "entries": index.entry_count,
                "path": str(index.index_path),
                "persisted": index.index_path.exists(),
            },
        }
    )


def create_app(
    data_dir: Optional[Path] = None,
    *,
    search_index: Optional[SearchIndex] = None,
    max_mirror_bytes: Optional[int] = None,
) -> Flask:
    store = ArchiveStore(Path(data_dir).expanduser().resolve() if data_dir is not None else DATA_DIR)
    flask_app = Flask(__name__)
    flask_app.config.update(
        ARCHIVE_STORE=store,
        SEARCH_INDEX=search_index if search_index is not None else SearchIndex(store),
        MIRROR_RENDERER=MirrorRenderer(store, max_bytes=max_mirror_bytes or MIRROR_MAX_BYTES),
        SEARCH_DEFAULT_LIMIT=max(1, min(SEARCH_DEFAULT_LIMIT, SEARCH_MAX_LIMIT)),
        SEARCH_MAX_LIMIT=SEARCH_MAX_LIMIT,
    )
    flask_app.json.sort_keys = False
    flask_app.register_blueprint(api)

    @flask_app.after_request
    def apply_security_headers(response: Response) -> Response:
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        return response

    @flask_app.errorhandler(404)
    def unknown_route(_exc: HTTPException):
        if request.path.startswith("/api/"):
            return _error("Unknown API endpoint", 404)
        return _error("Not found", 404)

    return flask_app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "3200"))
    debug = _parse_bool(os.environ.get("FLASK_DEBUG"), default=False)
    logger.info("Reading archive data from %s", DATA_DIR)
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)
