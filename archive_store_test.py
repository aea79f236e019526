from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path

import sample_archive
from archive_store import (
    ArchiveStore,
    CaptureTooLargeError,
    InvalidVersionError,
    NotFoundError,
    PathBlockedError,
    require_safe_path,
    safe_read_bytes,
)


class ArchiveStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._tmp.name)
        self.store = ArchiveStore(self.data_dir)

    def tearDown(self) -> None:
        self._tmp.cleanup()


class VersionResolverTest(ArchiveStoreTestCase):
    def test_latest_version_uses_numeric_order(self) -> None:
        for number in (1, 2, 10):
            sample_archive.version_dir(self.data_dir, "site1", number)
        ref = self.store.resolve_version("site1")
        self.assertIsNotNone(ref)
        self.assertEqual(ref.number, 10)
        self.assertEqual(ref.path.name, "v10")

    def test_named_version(self) -> None:
        for number in (1, 2):
            sample_archive.version_dir(self.data_dir, "site1", number)
        ref = self.store.resolve_version("site1", "v1")
        self.assertEqual(ref.number, 1)
        self.assertIsNone(self.store.resolve_version("site1", "v7"))

    def test_malformed_version_token_is_invalid_not_missing(self) -> None:
        sample_archive.version_dir(self.data_dir, "site1", 1)
        for token in ("1", "v0", "v-1", "latest", "v1/../v2", "V1", "v01"):
            with self.subTest(token=token):
                with self.assertRaises(InvalidVersionError):
                    self.store.resolve_version("site1", token)

    def test_site_without_versions_is_not_found(self) -> None:
        (self.data_dir / "sites" / "empty" / "versions" / "draft").mkdir(parents=True)
        self.assertIsNone(self.store.resolve_version("empty"))
        self.assertIsNone(self.store.resolve_version("missing"))
        self.assertIsNone(self.store.resolve_version("../etc"))
        with self.assertRaises(NotFoundError):
            self.store.require_version("empty")


class PathGuardTest(ArchiveStoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.base = self.data_dir / "sites" / "site1"
        self.base.mkdir(parents=True)

    def test_traversal_is_blocked_even_for_missing_targets(self) -> None:
        candidate = self.base / ".." / ".." / ".." / "etc" / "passwd"
        with self.assertRaises(NotFoundError) as ctx:
            require_safe_path(candidate, self.base)
        self.assertEqual(str(ctx.exception), "Not found")

    def test_traversal_to_existing_file_is_blocked(self) -> None:
        secret = self.data_dir / "secret.txt"
        secret.write_text("top secret", encoding="utf-8")
        with self.assertRaises(PathBlockedError) as ctx:
            require_safe_path(self.base / ".." / ".." / "secret.txt", self.base)
        self.assertNotIn(str(self.data_dir), str(ctx.exception))

    def test_sibling_with_shared_prefix_is_blocked(self) -> None:
        sibling = self.data_dir / "sites" / "site10"
        sibling.mkdir(parents=True)
        (sibling / "page.html").write_text("x", encoding="utf-8")
        with self.assertRaises(PathBlockedError):
            require_safe_path(sibling / "page.html", self.base)

    @unittest.skipUnless(hasattr(os, "symlink"), "symlinks unavailable")
    def test_symlink_escape_is_blocked(self) -> None:
        outside = self.data_dir / "outside.txt"
        outside.write_text("outside", encoding="utf-8")
        link = self.base / "link.txt"
        try:
            link.symlink_to(outside)
        except OSError:
            self.skipTest("cannot create symlinks here")
        with self.assertRaises(PathBlockedError):
            require_safe_path(link, self.base)

    def test_missing_file_inside_base_is_plain_not_found(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            require_safe_path(self.base / "versions" / "v1" / "nothing.png", self.base)
        self.assertNotIsInstance(ctx.exception, PathBlockedError)

    def test_safe_read_returns_bytes_and_enforces_ceiling(self) -> None:
        target = self.base / "page.html"
        target.write_bytes(b"<p>hello</p>")
        self.assertEqual(safe_read_bytes(target, self.base), b"<p>hello</p>")
        with self.assertRaises(CaptureTooLargeError):
            safe_read_bytes(target, self.base, max_bytes=4)

    def test_blocked_attempt_warning_omits_paths(self) -> None:
        with self.assertLogs("archive_store", level="WARNING") as logs:
            with self.assertRaises(PathBlockedError):
                require_safe_path(self.base / ".." / ".." / ".." / "nowhere" / "x.txt", self.base)
        for line in logs.output:
            self.assertNotIn(str(self.data_dir), line)
            self.assertNotIn("nowhere", line)

    def test_base_itself_is_not_a_readable_target(self) -> None:
        with self.assertRaises(PathBlockedError):
            require_safe_path(self.base, self.base)


class SiteMapLoaderTest(ArchiveStoreTestCase):
    def test_falls_back_to_newest_parseable_version(self) -> None:
        sample_archive.write_analysis(self.data_dir, "site1", 1, sample_archive.site_map("site1", "https://a.example", [], crawled_at="one"))
        sample_archive.write_analysis(self.data_dir, "site1", 2, sample_archive.site_map("site1", "https://a.example", [], crawled_at="two"))
        sample_archive.write_analysis(self.data_dir, "site1", 3, "{not json")
        sample_archive.version_dir(self.data_dir, "site1", 4)

        latest = self.store.load_capability_map("site1")
        self.assertIsNotNone(latest)
        self.assertEqual(latest.crawled_at, "two")

    def test_explicit_version_does_not_fall_back(self) -> None:
        sample_archive.write_analysis(self.data_dir, "site1", 1, sample_archive.site_map("site1", "https://a.example", []))
        sample_archive.write_analysis(self.data_dir, "site1", 2, "{broken")
        self.assertIsNone(self.store.load_capability_map("site1", "v2"))
        self.assertIsNotNone(self.store.load_capability_map("site1", "v1"))
        self.assertIsNone(self.store.load_capability_map("site1", "v9"))
        with self.assertRaises(InvalidVersionError):
            self.store.load_capability_map("site1", "two")

    def test_malformed_shape_counts_as_absent(self) -> None:
        sample_archive.write_analysis(self.data_dir, "site1", 1, sample_archive.site_map("site1", "https://a.example", [], crawled_at="good"))
        sample_archive.write_analysis(self.data_dir, "site1", 2, {"capabilities": "nope"})
        sample_archive.write_analysis(self.data_dir, "site1", 3, ["not", "an", "object"])
        self.assertEqual(self.store.load_capability_map("site1").crawled_at, "good")

    def test_typed_capabilities(self) -> None:
        sample_archive.write_analysis(
            self.data_dir,
            "site1",
            1,
            sample_archive.site_map(
                "site1",
                "https://a.example",
                [{"name": "Legacy", "type": "action", "requiresAuth": True, "page": "https://a.example/x"}],
            ),
        )
        cap = self.store.load_capability_map("site1").capabilities[0]
        self.assertEqual(cap.authentication, "required")
        self.assertEqual(cap.page_url, "https://a.example/x")
        self.assertTrue(cap.is_known_type)

    def test_list_versions_skips_versions_without_analysis(self) -> None:
        sample_archive.write_analysis(self.data_dir, "site1", 1, sample_archive.site_map("site1", "https://a.example", [], crawled_at="a"))
        sample_archive.write_analysis(self.data_dir, "site1", 10, sample_archive.site_map("site1", "https://a.example", [], crawled_at="c"))
        sample_archive.write_analysis(self.data_dir, "site1", 2, sample_archive.site_map("site1", "https://a.example", [], crawled_at="b"))
        sample_archive.version_dir(self.data_dir, "site1", 11)
        self.assertEqual(
            self.store.list_versions("site1"),
            [
                {"version": 1, "crawledAt": "a"},
                {"version": 2, "crawledAt": "b"},
                {"version": 10, "crawledAt": "c"},
            ],
        )

    def test_list_sites_and_stats(self) -> None:
        sample_archive.build_default_archive(self.data_dir)
        (self.data_dir / "sites" / "halfdone" / "versions" / "v1").mkdir(parents=True)

        sites = self.store.list_sites()
        self.assertEqual([s["id"] for s in sites], ["blog", "shop"])
        shop = sites[1]
        self.assertEqual(shop["capabilityCount"], 3)
        self.assertEqual(shop["versions"], 2)
        self.assertEqual(shop["typeDistribution"], {"form": 1, "search": 1, "download": 1})

        self.assertEqual(self.store.stats(), {"totalSites": 2, "totalCapabilities": 6, "totalPages": 2})

    def test_analytics_skip_versions_without_analysis(self) -> None:
        sample_archive.build_default_archive(self.data_dir)
        sample_archive.version_dir(self.data_dir, "shop", 3)
        sample_archive.write_raw(self.data_dir, "shop", 3, "screenshots/0.png", b"\x89PNG")
        (self.data_dir / "sites" / "halfdone" / "versions" / "v1").mkdir(parents=True)

        overview = self.store.analytics_overview()
        self.assertEqual(overview["totalVersions"], 3)
        self.assertEqual(overview["totalScreenshots"], 2)
        self.assertEqual([s["id"] for s in overview["sitesByCapCount"]], ["blog", "shop"])

        shop = self.store.site_analytics("shop")
        self.assertEqual([d["version"] for d in shop["capsOverTime"]], [1, 2])
        self.assertEqual(shop["apiEndpointsOverTime"][0]["count"], 1)
        self.assertIsNone(self.store.site_analytics("halfdone"))
        self.assertIsNone(self.store.site_analytics("../etc"))

    def test_timeline_summarises_each_version(self) -> None:
        sample_archive.build_default_archive(self.data_dir)
        timeline = self.store.timeline("shop")
        self.assertEqual([t["version"] for t in timeline], [1, 2])
        self.assertEqual(timeline[1]["capabilityCount"], 3)
        self.assertEqual(timeline[1]["date"], "2024-02-01T00:00:00Z")


class RawArtifactTest(ArchiveStoreTestCase):
    def test_screenshots_and_html_index(self) -> None:
        sample_archive.build_default_archive(self.data_dir)
        ref = self.store.require_version("shop")
        listing = self.store.list_screenshots(ref)
        self.assertEqual(listing["version"], "v2")
        self.assertEqual([p["index"] for p in listing["pages"]], [0, 1])
        self.assertEqual(listing["pages"][1]["url"], "https://shop.example/login")
        self.assertEqual(listing["pages"][0]["screenshotUrl"], "/api/sites/shop/screenshot/0.png?version=v2")

        self.assertTrue(self.store.screenshot_path(ref, "0.png").is_file())
        with self.assertRaises(NotFoundError):
            self.store.screenshot_path(ref, "../../../v1/analysis/sitemap.json")

    def test_screenshot_names_that_are_directories_are_not_found(self) -> None:
        sample_archive.build_default_archive(self.data_dir)
        ref = self.store.require_version("shop")
        (ref.raw_dir / "screenshots" / "album.png").mkdir()
        for name in (".", "..", "...", "album.png", ""):
            with self.subTest(name=name):
                with self.assertRaises(NotFoundError):
                    self.store.screenshot_path(ref, name)

    def test_network_classification(self) -> None:
        sample_archive.build_default_archive(self.data_dir)
        sample_archive.write_raw(
            self.data_dir,
            "shop",
            2,
            "network.json",
            {
                "requests": [
                    {"url": "https://shop.example/api/cart", "method": "post", "status": 200, "resourceType": "fetch"},
                    {"url": "https://www.shop.example/data.json", "status": 200, "contentType": "application/json"},
                    {"url": "https://shop.example/style.css", "status": 200, "resourceType": "stylesheet"},
                    {"url": "https://cdn.tracker.example/pixel.gif", "status": 204, "resourceType": "image"},
                    {"method": "GET"},
                ]
            },
        )
        data = self.store.network(self.store.require_version("shop"))
        self.assertEqual([r["url"] for r in data["apis"]], ["https://shop.example/api/cart", "https://www.shop.example/data.json"])
        self.assertEqual(data["apis"][0]["method"], "POST")
        self.assertEqual([r["url"] for r in data["resources"]], ["https://shop.example/style.css"])
        self.assertEqual([r["url"] for r in data["thirdParty"]], ["https://cdn.tracker.example/pixel.gif"])

    def test_missing_network_log_is_empty(self) -> None:
        sample_archive.build_default_archive(self.data_dir)
        data = self.store.network(self.store.require_version("blog"))
        self.assertEqual(data, {"version": "v1", "apis": [], "resources": [], "thirdParty": []})


if __name__ == "__main__":
    unittest.main(verbosity=2)
