from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy import String, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.models.content import ModuleInstance, ModuleScope, Post, PostModule
from media_pipeline.models.media import MediaAsset
from media_pipeline.services.records import get_asset_or_404
from media_pipeline.services.variant_policy import variants_of


@dataclass(slots=True, frozen=True)
class ModuleReference:
    module_id: UUID
    module_type: str
    scope: str
    field: str
    post_id: UUID | None = None


@dataclass(slots=True, frozen=True)
class OverrideReference:
    override_id: UUID
    post_id: UUID
    module_id: UUID
    field: str


@dataclass(slots=True, frozen=True)
class PostReference:
    post_id: UUID
    title: str
    field: str


@dataclass(slots=True)
class Usage:
    in_modules: list[ModuleReference] = field(default_factory=list)
    in_overrides: list[OverrideReference] = field(default_factory=list)
    in_posts: list[PostReference] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.in_modules and not self.in_overrides and not self.in_posts

    @property
    def total(self) -> int:
        return len(self.in_modules) + len(self.in_overrides) + len(self.in_posts)

    def as_dict(self) -> dict[str, Any]:
        def _row(ref: Any) -> dict[str, Any]:
            return {key: (str(value) if isinstance(value, UUID) else value) for key, value in asdict(ref).items()}

        return {
            "in_modules": [_row(ref) for ref in self.in_modules],
            "in_overrides": [_row(ref) for ref in self.in_overrides],
            "in_posts": [_row(ref) for ref in self.in_posts],
        }


def asset_needles(asset: MediaAsset) -> list[str]:
    """Every string a consumer record may embed to point at this asset."""
    meta = asset.meta or {}
    values: list[str | None] = [str(asset.id), asset.original_url, asset.optimized_url]
    values.append(meta.get("dark_source_url"))
    values.append(meta.get("dark_optimized_url"))
    for variant in variants_of(meta):
        values.append(variant.get("url"))
        values.append(variant.get("optimized_url"))
    seen: list[str] = []
    for value in values:
        if isinstance(value, str) and value and value not in seen:
            seen.append(value)
    return seen


def _contains(value: Any, needles: list[str]) -> bool:
    if isinstance(value, str):
        return any(needle in value for needle in needles)
    if isinstance(value, dict):
        return any(_contains(item, needles) for item in value.values())
    if isinstance(value, list):
        return any(_contains(item, needles) for item in value)
    return False


def _json_like(column: Any, needles: list[str]) -> Any:
    return or_(*[func.cast(column, String).ilike(f"%{needle}%") for needle in needles])


async def usage_for_asset(session: AsyncSession, asset: MediaAsset) -> Usage:
    needles = asset_needles(asset)
    usage = Usage()

    modules = (
        await session.execute(
            select(ModuleInstance).where(
                or_(_json_like(ModuleInstance.props, needles), _json_like(ModuleInstance.review_props, needles))
            )
        )
    ).scalars().all()
    if modules:
        links = (
            await session.execute(
                select(PostModule.module_id, PostModule.post_id).where(PostModule.module_id.in_([m.id for m in modules]))
            )
        ).all()
        posts_by_module: dict[UUID, list[UUID]] = {}
        for module_id, post_id in links:
            posts_by_module.setdefault(module_id, []).append(post_id)

        for module in sorted(modules, key=lambda m: str(m.id)):
            fields = [
                name for name, value in (("props", module.props), ("review_props", module.review_props)) if _contains(value, needles)
            ]
            if not fields:
                continue
            scope = module.scope.value if isinstance(module.scope, ModuleScope) else str(module.scope)
            if module.scope == ModuleScope.global_:
                for name in fields:
                    usage.in_modules.append(
                        ModuleReference(module_id=module.id, module_type=module.type, scope=scope, field=name)
                    )
                continue
            # post-scoped modules no longer attached to any post are orphans
            for post_id in posts_by_module.get(module.id, []):
                for name in fields:
                    usage.in_modules.append(
                        ModuleReference(
                            module_id=module.id, module_type=module.type, scope=scope, field=name, post_id=post_id
                        )
                    )

    overrides = (
        await session.execute(
            select(PostModule).where(
                or_(_json_like(PostModule.overrides, needles), _json_like(PostModule.review_overrides, needles))
            )
        )
    ).scalars().all()
    for row in sorted(overrides, key=lambda r: str(r.id)):
        for name, value in (("overrides", row.overrides), ("review_overrides", row.review_overrides)):
            if _contains(value, needles):
                usage.in_overrides.append(
                    OverrideReference(override_id=row.id, post_id=row.post_id, module_id=row.module_id, field=name)
                )

    posts = (
        await session.execute(
            select(Post).where(or_(Post.featured_media_id == asset.id, _json_like(Post.review_draft, needles)))
        )
    ).scalars().all()
    for post in sorted(posts, key=lambda p: str(p.id)):
        if post.featured_media_id == asset.id:
            usage.in_posts.append(PostReference(post_id=post.id, title=post.title, field="featured_media_id"))
        if post.review_draft is not None and _contains(post.review_draft, needles):
            usage.in_posts.append(PostReference(post_id=post.id, title=post.title, field="review_draft"))
    return usage


async def where_used(session: AsyncSession, asset_id: UUID) -> Usage:
    asset = await get_asset_or_404(session, asset_id)
    return await usage_for_asset(session, asset)


def _replace(value: Any, old: str, new: str) -> Any:
    if isinstance(value, str):
        return value.replace(old, new)
    if isinstance(value, dict):
        return {key: _replace(item, old, new) for key, item in value.items()}
    if isinstance(value, list):
        return [_replace(item, old, new) for item in value]
    return value


async def rewrite_references(session: AsyncSession, old_url: str, new_url: str) -> int:
    """Point consumer records at `new_url`; the caller commits."""
    if not old_url or old_url == new_url:
        return 0
    needles = [old_url]
    changed = 0
    modules = (
        await session.execute(
            select(ModuleInstance).where(
                or_(_json_like(ModuleInstance.props, needles), _json_like(ModuleInstance.review_props, needles))
            )
        )
    ).scalars().all()
    for module in modules:
        if _contains(module.props, needles):
            module.props = _replace(module.props, old_url, new_url)
            changed += 1
        if module.review_props is not None and _contains(module.review_props, needles):
            module.review_props = _replace(module.review_props, old_url, new_url)
            changed += 1
        session.add(module)

    rows = (
        await session.execute(
            select(PostModule).where(
                or_(_json_like(PostModule.overrides, needles), _json_like(PostModule.review_overrides, needles))
            )
        )
    ).scalars().all()
    for row in rows:
        if row.overrides is not None and _contains(row.overrides, needles):
            row.overrides = _replace(row.overrides, old_url, new_url)
            changed += 1
        if row.review_overrides is not None and _contains(row.review_overrides, needles):
            row.review_overrides = _replace(row.review_overrides, old_url, new_url)
            changed += 1
        session.add(row)

    posts = (await session.execute(select(Post).where(_json_like(Post.review_draft, needles)))).scalars().all()
    for post in posts:
        if post.review_draft is not None and _contains(post.review_draft, needles):
            post.review_draft = _replace(post.review_draft, old_url, new_url)
            changed += 1
            session.add(post)
    await session.flush()
    return changed


async def clear_featured(session: AsyncSession, asset_id: UUID) -> None:
    """Detach the asset from every post that features it; the caller commits."""
    await session.execute(
        update(Post).where(Post.featured_media_id == asset_id).values(featured_media_id=None)
    )
