"""Which derivatives an asset is expected to have, and how far it is from that.

Everything here is a pure projection of settings and `MediaAsset.meta`; nothing is
cached, so the answer always reflects the record as it is right now.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal, Mapping

from media_pipeline.core.config import settings

Theme = Literal["light", "dark"]
Fit = Literal["inside", "cover"]

THEMES: tuple[Theme, ...] = ("light", "dark")
DARK_SUFFIX = "-dark"
CROPPED_VARIANT = "cropped"

_SPEC_RE = re.compile(r"^(?P<w>\d*)x(?P<h>\d*)$")


@dataclass(slots=True, frozen=True)
class DerivativeSpec:
    name: str
    width: int | None
    height: int | None
    fit: Fit

    @property
    def aspect_ratio(self) -> float | None:
        if self.width and self.height:
            return self.width / self.height
        return None


@dataclass(slots=True, frozen=True)
class VariantStatus:
    has_all_light: bool
    has_all_dark: bool
    has_dark_base: bool
    missing_light: tuple[str, ...] = ()
    missing_dark: tuple[str, ...] = ()


def parse_derivatives(raw: str | None = None) -> list[DerivativeSpec]:
    """Parse `thumb:200x200_crop,small:400x,...` into specs, skipping malformed entries."""
    source = settings.media_derivatives if raw is None else raw
    specs: list[DerivativeSpec] = []
    seen: set[str] = set()
    for part in (source or "").split(","):
        name, _, dims = part.strip().partition(":")
        name = name.strip()
        if not name or not dims or name in seen or name.endswith(DARK_SUFFIX):
            continue
        crop = "crop" in dims.lower()
        match = _SPEC_RE.match(re.sub(r"_?crop", "", dims.strip(), flags=re.IGNORECASE))
        if not match:
            continue
        width = int(match["w"]) if match["w"] else None
        height = int(match["h"]) if match["h"] else None
        if not width and not height:
            continue
        seen.add(name)
        specs.append(DerivativeSpec(name=name, width=width or None, height=height or None, fit="cover" if crop else "inside"))
    return specs


def coerce_theme(raw: str | None) -> Theme:
    return "dark" if str(raw or "").strip().lower() == "dark" else "light"


def themed_name(name: str, theme: Theme) -> str:
    return f"{name}{DARK_SUFFIX}" if theme == "dark" else name


def theme_of(variant_name: str) -> Theme:
    return "dark" if variant_name.endswith(DARK_SUFFIX) else "light"


def expected_specs(theme: Theme) -> list[tuple[str, DerivativeSpec]]:
    return [(themed_name(spec.name, theme), spec) for spec in parse_derivatives()]


def expected_names(theme: Theme) -> list[str]:
    return [name for name, _ in expected_specs(theme)]


def custom_specs(meta: Mapping[str, Any] | None, theme: Theme) -> list[tuple[str, DerivativeSpec]]:
    """Ad-hoc variants of `theme` recorded with their own `spec`, in stored order."""
    configured = set(expected_names(theme))
    found: list[tuple[str, DerivativeSpec]] = []
    for variant in variants_of(meta):
        name, raw = variant["name"], variant.get("spec")
        if name in configured or name == CROPPED_VARIANT or theme_of(name) != theme or not isinstance(raw, dict):
            continue
        width, height = raw.get("width"), raw.get("height")
        if not isinstance(width, int) or width <= 0:
            width = None
        if not isinstance(height, int) or height <= 0:
            height = None
        if not width and not height:
            continue
        base = name[: -len(DARK_SUFFIX)] if theme == "dark" else name
        fit: Fit = "inside" if raw.get("fit") == "inside" else "cover"
        found.append((name, DerivativeSpec(name=base, width=width, height=height, fit=fit)))
    return found


def derivation_specs(meta: Mapping[str, Any] | None, theme: Theme) -> list[tuple[str, DerivativeSpec]]:
    """Everything a full derivation of `theme` renders: configured names, then custom ones."""
    return expected_specs(theme) + custom_specs(meta, theme)


def variants_of(meta: Mapping[str, Any] | None) -> list[dict[str, Any]]:
    raw = (meta or {}).get("variants")
    if not isinstance(raw, list):
        return []
    return [dict(v) for v in raw if isinstance(v, dict) and isinstance(v.get("name"), str)]


def fresh_names(meta: Mapping[str, Any] | None) -> set[str]:
    return {v["name"] for v in variants_of(meta) if not v.get("stale")}


def missing_names(meta: Mapping[str, Any] | None, theme: Theme) -> list[str]:
    present = fresh_names(meta)
    return [name for name in expected_names(theme) if name not in present]


def status(asset: Any) -> VariantStatus:
    meta = getattr(asset, "meta", None) or {}
    missing_light = missing_names(meta, "light")
    missing_dark = missing_names(meta, "dark")
    return VariantStatus(
        has_all_light=not missing_light,
        has_all_dark=not missing_dark,
        has_dark_base=bool(meta.get("dark_source_url")),
        missing_light=tuple(missing_light),
        missing_dark=tuple(missing_dark),
    )


def themes_with_variants(meta: Mapping[str, Any] | None) -> list[Theme]:
    names = [v["name"] for v in variants_of(meta)]
    found = {theme_of(name) for name in names if name != CROPPED_VARIANT}
    return [theme for theme in THEMES if theme in found]


def merge_variants(existing: list[dict[str, Any]], produced: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Replace same-named entries in place, append new names in production order."""
    by_name = {v["name"]: v for v in produced}
    merged: list[dict[str, Any]] = []
    seen: set[str] = set()
    for variant in existing:
        name = variant["name"]
        if name in seen:
            continue
        seen.add(name)
        merged.append(by_name.get(name, variant))
    for variant in produced:
        if variant["name"] not in seen:
            seen.add(variant["name"])
            merged.append(variant)
    return merged


def mark_stale(existing: list[dict[str, Any]], theme: Theme) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for variant in existing:
        if theme_of(variant["name"]) == theme:
            variant = {**variant, "stale": True}
        out.append(variant)
    return out
