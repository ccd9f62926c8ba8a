import asyncio
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image
from sqlalchemy import select

from media_pipeline.core import metrics
from media_pipeline.core.config import settings
from media_pipeline.models.content import ModuleInstance, ModuleScope, Post, PostModule
from media_pipeline.services import assets, usage
from media_pipeline.services.errors import AssetNotFound, RenameConflict, UsageBlocked
from media_pipeline.services.records import get_asset_or_404
from media_pipeline.services.storage import UploadedFile


def _jpeg_bytes(color=(0, 128, 0)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (320, 240), color=color).save(buf, format="JPEG")
    return buf.getvalue()


def _call(session_factory, fn, *args, **kwargs):
    async def _run():
        async with session_factory() as session:
            return await fn(session, *args, **kwargs)

    return asyncio.run(_run())


def _create(session_factory, filename="cover.jpg"):
    upload = UploadedFile(filename=filename, content_type="image/jpeg", content=_jpeg_bytes())
    return _call(session_factory, assets.create, upload)


def _seed_consumers(session_factory, asset) -> dict:
    thumb_url = next(v["url"] for v in asset.meta["variants"] if v["name"] == "thumb")

    async def _run() -> dict:
        async with session_factory() as session:
            post = Post(title="Spring issue")
            hero = ModuleInstance(
                type="hero",
                scope=ModuleScope.global_,
                global_slug="site-hero",
                props={"image": {"url": asset.original_url, "alt": "cover"}},
            )
            gallery = ModuleInstance(type="gallery", scope=ModuleScope.post, props={"items": [{"mediaId": str(asset.id)}]})
            orphan = ModuleInstance(type="image", scope=ModuleScope.post, props={"src": asset.original_url})
            card = ModuleInstance(type="card", scope=ModuleScope.post, props={"title": "nothing here"})
            session.add_all([post, hero, gallery, orphan, card])
            await session.flush()
            attached = PostModule(post_id=post.id, module_id=gallery.id)
            card_link = PostModule(
                post_id=post.id,
                module_id=card.id,
                overrides={"thumbnail": thumb_url},
                review_overrides={"thumbnail": asset.original_url},
            )
            session.add_all([attached, card_link])
            await session.commit()
            return {"post": post.id, "hero": hero.id, "gallery": gallery.id, "orphan": orphan.id, "card_link": card_link.id}

    return asyncio.run(_run())


def test_where_used_scans_modules_and_overrides(session_factory, media_root: Path) -> None:
    asset = _create(session_factory)
    ids = _seed_consumers(session_factory, asset)

    found = _call(session_factory, usage.where_used, asset.id)

    modules = {(ref.module_id, ref.field, ref.post_id) for ref in found.in_modules}
    assert modules == {(ids["hero"], "props", None), (ids["gallery"], "props", ids["post"])}
    assert all(ref.module_id != ids["orphan"] for ref in found.in_modules)
    overrides = {(ref.override_id, ref.field) for ref in found.in_overrides}
    assert overrides == {(ids["card_link"], "overrides"), (ids["card_link"], "review_overrides")}
    assert found.as_dict()["in_modules"][0]["module_id"] in {str(ids["hero"]), str(ids["gallery"])}


def test_where_used_is_empty_for_unreferenced_asset(session_factory, media_root: Path) -> None:
    asset = _create(session_factory)
    _create(session_factory, "other.jpg")

    found = _call(session_factory, usage.where_used, asset.id)

    assert found.is_empty


def test_delete_blocked_when_referenced(session_factory, media_root: Path) -> None:
    asset = _create(session_factory)
    _seed_consumers(session_factory, asset)

    with pytest.raises(UsageBlocked) as excinfo:
        _call(session_factory, assets.delete, asset.id)

    assert excinfo.value.status_code == 409
    assert len(excinfo.value.usage["in_modules"]) == 2
    assert (media_root / asset.storage_key).exists()
    assert metrics.snapshot()["media_usage_blocked"] == 1


def test_forced_delete_removes_every_file(session_factory, media_root: Path) -> None:
    asset = _create(session_factory)
    _seed_consumers(session_factory, asset)
    dark = UploadedFile(filename="cover-dark.jpg", content_type="image/jpeg", content=_jpeg_bytes((5, 5, 5)))
    asset = _call(session_factory, assets.override, asset.id, dark, "dark")
    asset = _call(session_factory, assets.optimize, asset.id)
    files = assets.owned_keys(asset)
    assert len(files) >= 1 + 1 + 4 + 4 + 1 + 1

    _call(session_factory, assets.delete, asset.id, force=True)

    for key in files:
        assert not (media_root / key).exists(), key
    assert not (media_root / "derived" / str(asset.id)).exists()
    with pytest.raises(AssetNotFound):
        _call(session_factory, get_asset_or_404, asset.id)
    assert metrics.snapshot()["media_deleted"] == 1


def test_rename_moves_original_and_rewrites_references(session_factory, media_root: Path) -> None:
    asset = _create(session_factory)
    ids = _seed_consumers(session_factory, asset)
    old_path = media_root / asset.storage_key
    variant_urls = [v["url"] for v in asset.meta["variants"]]

    renamed = _call(session_factory, assets.rename, asset.id, "Spring Cover!!")

    assert renamed.original_filename == "spring-cover.jpg"
    assert renamed.storage_key == "originals/spring-cover.jpg"
    assert renamed.original_url == "/media/originals/spring-cover.jpg"
    assert not old_path.exists()
    assert (media_root / renamed.storage_key).exists()
    assert [v["url"] for v in renamed.meta["variants"]] == variant_urls

    async def _props():
        async with session_factory() as session:
            hero = await session.get(ModuleInstance, ids["hero"])
            link = await session.get(PostModule, ids["card_link"])
            return hero.props, link.review_overrides

    hero_props, review_overrides = asyncio.run(_props())
    assert hero_props["image"]["url"] == "/media/originals/spring-cover.jpg"
    assert review_overrides == {"thumbnail": "/media/originals/spring-cover.jpg"}


def test_rename_conflict(session_factory, media_root: Path) -> None:
    first = _create(session_factory, "a.jpg")
    second = _create(session_factory, "b.jpg")

    with pytest.raises(RenameConflict) as excinfo:
        _call(session_factory, assets.rename, second.id, "A")

    assert excinfo.value.conflicting_asset_id == first.id
    stored = _call(session_factory, get_asset_or_404, second.id)
    assert stored.storage_key == "originals/b.jpg"


def test_override_warns_on_use_when_configured(session_factory, media_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "media_override_warn_on_use", True)
    asset = _create(session_factory)
    _seed_consumers(session_factory, asset)
    replacement = UploadedFile(filename="cover.jpg", content_type="image/jpeg", content=_jpeg_bytes((9, 9, 9)))

    with pytest.raises(UsageBlocked):
        _call(session_factory, assets.override, asset.id, replacement, "light")

    forced = _call(session_factory, assets.override, asset.id, replacement, "light", force=True)
    assert all(v.get("stale") for v in forced.meta["variants"])


def test_light_override_with_new_name_rewrites_references(session_factory, media_root: Path) -> None:
    asset = _create(session_factory)
    ids = _seed_consumers(session_factory, asset)
    replacement = UploadedFile(filename="Cover V2.png", content_type="image/png", content=_jpeg_bytes((1, 2, 3)))

    updated = _call(session_factory, assets.override, asset.id, replacement, "light")

    assert updated.original_filename == "Cover V2.png"
    assert updated.original_url == "/media/originals/cover-v2.png"
    assert updated.mime_type == "image/png"
    assert not (media_root / asset.storage_key).exists()

    async def _hero_props():
        async with session_factory() as session:
            return (await session.execute(select(ModuleInstance.props).where(ModuleInstance.id == ids["hero"]))).scalar_one()

    assert asyncio.run(_hero_props())["image"]["url"] == "/media/originals/cover-v2.png"


def _seed_posts(session_factory, asset) -> dict:
    async def _run() -> dict:
        async with session_factory() as session:
            featured = Post(title="Featured story", featured_media_id=asset.id)
            drafted = Post(title="Draft story", review_draft={"body": [{"type": "image", "src": asset.original_url}]})
            plain = Post(title="Plain story", review_draft={"body": []})
            session.add_all([featured, drafted, plain])
            await session.commit()
            return {"featured": featured.id, "drafted": drafted.id, "plain": plain.id}

    return asyncio.run(_run())


def test_where_used_reports_featured_media_and_review_drafts(session_factory, media_root: Path) -> None:
    asset = _create(session_factory)
    ids = _seed_posts(session_factory, asset)

    found = _call(session_factory, usage.where_used, asset.id)

    assert not found.is_empty
    assert {(ref.post_id, ref.field) for ref in found.in_posts} == {
        (ids["featured"], "featured_media_id"),
        (ids["drafted"], "review_draft"),
    }
    assert found.in_modules == [] and found.in_overrides == []
    assert {row["title"] for row in found.as_dict()["in_posts"]} == {"Featured story", "Draft story"}


def test_featured_post_blocks_delete_until_forced(session_factory, media_root: Path) -> None:
    asset = _create(session_factory)
    ids = _seed_posts(session_factory, asset)

    with pytest.raises(UsageBlocked) as excinfo:
        _call(session_factory, assets.delete, asset.id)
    assert len(excinfo.value.usage["in_posts"]) == 2

    _call(session_factory, assets.delete, asset.id, force=True)

    async def _featured():
        async with session_factory() as session:
            return await session.scalar(select(Post.featured_media_id).where(Post.id == ids["featured"]))

    assert asyncio.run(_featured()) is None
    with pytest.raises(AssetNotFound):
        _call(session_factory, get_asset_or_404, asset.id)


def test_rename_rewrites_review_drafts(session_factory, media_root: Path) -> None:
    asset = _create(session_factory)
    ids = _seed_posts(session_factory, asset)

    _call(session_factory, assets.rename, asset.id, "renamed-cover")

    async def _draft():
        async with session_factory() as session:
            return await session.scalar(select(Post.review_draft).where(Post.id == ids["drafted"]))

    assert asyncio.run(_draft()) == {"body": [{"type": "image", "src": "/media/originals/renamed-cover.jpg"}]}
