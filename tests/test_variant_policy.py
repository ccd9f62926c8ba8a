from types import SimpleNamespace

import pytest

from media_pipeline.core.config import settings
from media_pipeline.services import variant_policy


def _variant(name: str, **extra) -> dict:
    return {"name": name, "url": f"/media/derived/x/{name}.jpg", **extra}


def test_parse_derivatives_default_config() -> None:
    specs = variant_policy.parse_derivatives()

    assert [s.name for s in specs] == ["thumb", "small", "medium", "large"]
    thumb = specs[0]
    assert (thumb.width, thumb.height, thumb.fit) == (200, 200, "cover")
    assert thumb.aspect_ratio == pytest.approx(1.0)
    small = specs[1]
    assert (small.width, small.height, small.fit) == (400, None, "inside")
    assert small.aspect_ratio is None


def test_parse_derivatives_skips_malformed_and_duplicate_entries() -> None:
    specs = variant_policy.parse_derivatives("a:100x50_crop, bad, b:x, a:10x10, c:abc, d-dark:10x10, e:x300")

    assert [(s.name, s.width, s.height, s.fit) for s in specs] == [
        ("a", 100, 50, "cover"),
        ("e", None, 300, "inside"),
    ]


def test_expected_names_follow_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "media_derivatives", "hero:1200x600_crop,card:300x")

    assert variant_policy.expected_names("light") == ["hero", "card"]
    assert variant_policy.expected_names("dark") == ["hero-dark", "card-dark"]


def test_status_treats_stale_entries_as_missing() -> None:
    asset = SimpleNamespace(
        meta={
            "variants": [
                _variant("thumb"),
                _variant("small"),
                _variant("medium"),
                _variant("large", stale=True),
                _variant("thumb-dark"),
                _variant("small-dark"),
                _variant("medium-dark"),
                _variant("large-dark"),
            ]
        }
    )

    current = variant_policy.status(asset)

    assert current.has_all_light is False
    assert current.missing_light == ("large",)
    assert current.has_all_dark is True
    assert current.has_dark_base is False


def test_status_reports_dark_base() -> None:
    asset = SimpleNamespace(meta={"variants": [], "dark_source_url": "/media/derived/x/dark-source.jpg"})

    current = variant_policy.status(asset)

    assert current.has_dark_base is True
    assert current.has_all_light is False
    assert current.missing_dark == ("thumb-dark", "small-dark", "medium-dark", "large-dark")


def test_status_ignores_garbage_metadata() -> None:
    asset = SimpleNamespace(meta={"variants": [None, "thumb", {"url": "no-name"}]})

    assert variant_policy.status(asset).missing_light == ("thumb", "small", "medium", "large")


def test_merge_variants_replaces_in_place_and_appends() -> None:
    existing = [_variant("thumb", size=1), _variant("cropped"), _variant("small", size=2)]
    produced = [_variant("small", size=20), _variant("large", size=40), _variant("thumb", size=10)]

    merged = variant_policy.merge_variants(existing, produced)

    assert [v["name"] for v in merged] == ["thumb", "cropped", "small", "large"]
    assert merged[0]["size"] == 10
    assert merged[2]["size"] == 20


def test_mark_stale_only_touches_one_theme() -> None:
    existing = [_variant("thumb"), _variant("thumb-dark"), _variant("cropped")]

    marked = variant_policy.mark_stale(existing, "dark")

    assert [bool(v.get("stale")) for v in marked] == [False, True, False]
    assert "stale" not in existing[1]


def test_themes_with_variants_ignores_cropped() -> None:
    assert variant_policy.themes_with_variants({"variants": [_variant("cropped")]}) == []
    assert variant_policy.themes_with_variants({"variants": [_variant("thumb-dark")]}) == ["dark"]
    assert variant_policy.themes_with_variants({"variants": [_variant("small"), _variant("thumb-dark")]}) == [
        "light",
        "dark",
    ]


def test_coerce_theme_defaults_to_light() -> None:
    assert variant_policy.coerce_theme("DARK") == "dark"
    assert variant_policy.coerce_theme(None) == "light"
    assert variant_policy.coerce_theme("sepia") == "light"
