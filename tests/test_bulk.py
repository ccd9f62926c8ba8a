import asyncio
from collections import Counter
from io import BytesIO
from pathlib import Path
from uuid import uuid4

import pytest
from PIL import Image
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from media_pipeline.core import metrics
from media_pipeline.core.config import settings
from media_pipeline.db.base import Base
from media_pipeline.models.content import ModuleInstance, ModuleScope
from media_pipeline.services import assets, bulk, variant_policy
from media_pipeline.services.bulk import BulkOperation, BulkPayload, diff_category_snapshots
from media_pipeline.services.errors import MediaError
from media_pipeline.services.records import get_asset_or_404
from media_pipeline.services.storage import UploadedFile
from media_pipeline.services.transforms import PillowTransformer


def _create(session_factory, filename: str, *, categories=None, derive=True):
    buf = BytesIO()
    Image.new("RGB", (300, 200), color=(90, 30, 160)).save(buf, format="JPEG")

    async def _run():
        async with session_factory() as session:
            return await assets.create(
                session,
                UploadedFile(filename=filename, content_type="image/jpeg", content=buf.getvalue()),
                categories=categories,
                derive=derive,
            )

    return asyncio.run(_run())


def _load(session_factory, asset_id):
    async def _run():
        async with session_factory() as session:
            return await get_asset_or_404(session, asset_id)

    return asyncio.run(_run())


def test_results_follow_input_order_and_continue_on_error(session_factory, media_root: Path) -> None:
    first = _create(session_factory, "one.jpg", derive=False)
    second = _create(session_factory, "two.jpg", derive=False)
    missing = uuid4()

    results = asyncio.run(
        bulk.run(session_factory, BulkOperation.generate_missing_variants, [first.id, missing, second.id])
    )

    assert [r.asset_id for r in results] == [first.id, missing, second.id]
    assert [r.ok for r in results] == [True, False, True]
    assert results[1].error == "asset_not_found"
    for asset_id in (first.id, second.id):
        assert variant_policy.status(_load(session_factory, asset_id)).has_all_light is True
    assert metrics.snapshot()["media_bulk_generate_missing_variants"] == 1


def test_repeated_ids_each_get_a_result(session_factory, media_root: Path) -> None:
    asset = _create(session_factory, "repeat.jpg")

    results = asyncio.run(
        bulk.run(session_factory, "regenerate_all_variants", [asset.id, asset.id], BulkPayload(theme="dark"))
    )

    assert [r.ok for r in results] == [True, True]
    assert variant_policy.status(_load(session_factory, asset.id)).has_all_dark is True


def test_edit_categories_applies_snapshot_diff(session_factory, media_root: Path) -> None:
    a = _create(session_factory, "a.jpg", categories=["Blog", "Hero"], derive=False)
    b = _create(session_factory, "b.jpg", categories=["Blog", "Shop"], derive=False)
    add, remove = diff_category_snapshots(["Blog"], ["Events"])
    assert (add, remove) == (["Events"], ["Blog"])

    results = asyncio.run(
        bulk.run(session_factory, "edit_categories", [a.id, b.id], BulkPayload(add=add, remove=remove))
    )

    assert all(r.ok for r in results)
    assert _load(session_factory, a.id).categories == ["Hero", "Events"]
    assert _load(session_factory, b.id).categories == ["Shop", "Events"]


def test_diff_category_snapshots_ignores_blanks_and_repeats() -> None:
    assert diff_category_snapshots(["a", "b", "b"], ["b", " ", "c", "c"]) == (["c"], ["a"])
    assert diff_category_snapshots([], []) == ([], [])


def test_bulk_delete_reports_blocked_assets(session_factory, media_root: Path) -> None:
    used = _create(session_factory, "used.jpg", derive=False)
    free = _create(session_factory, "free.jpg", derive=False)

    async def _reference() -> None:
        async with session_factory() as session:
            session.add(
                ModuleInstance(
                    type="hero", scope=ModuleScope.global_, global_slug="hero", props={"src": used.original_url}
                )
            )
            await session.commit()

    asyncio.run(_reference())

    results = asyncio.run(bulk.run(session_factory, "delete", [used.id, free.id]))

    assert results[0].ok is False
    assert results[0].error == "usage_blocked"
    assert results[0].detail["usage"]["in_modules"][0]["module_type"] == "hero"
    assert results[1].ok is True
    assert _load(session_factory, used.id).id == used.id
    assert not (media_root / free.storage_key).exists()


def test_bulk_optimize(session_factory, media_root: Path) -> None:
    asset = _create(session_factory, "opt.jpg")

    results = asyncio.run(bulk.run(session_factory, "optimize", [asset.id]))

    assert results[0].ok is True
    stored = _load(session_factory, asset.id)
    assert stored.optimized_url == f"/media/derived/{asset.id}/optimized/original.webp"
    assert all(v.get("optimized_url") for v in stored.meta["variants"])


def test_bulk_rejects_oversized_requests(session_factory, media_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "media_bulk_max_ids", 2)

    with pytest.raises(MediaError):
        asyncio.run(bulk.run(session_factory, "delete", [uuid4(), uuid4(), uuid4()]))


def test_unknown_operation_is_rejected(session_factory, media_root: Path) -> None:
    with pytest.raises(ValueError):
        asyncio.run(bulk.run(session_factory, "explode", [uuid4()]))


class OverlapTransformer(PillowTransformer):
    """Counts renders in flight per asset folder."""

    def __init__(self) -> None:
        self.active: Counter[str] = Counter()
        self.max_per_asset = 0
        self.max_assets = 0

    async def render(self, request):
        folder = request.output.parent.name
        self.active[folder] += 1
        self.max_per_asset = max(self.max_per_asset, self.active[folder])
        self.max_assets = max(self.max_assets, sum(1 for count in self.active.values() if count))
        try:
            await asyncio.sleep(0.02)
            return await super().render(request)
        finally:
            self.active[folder] -= 1


def test_repeated_ids_queue_while_distinct_ids_overlap(
    tmp_path: Path, media_root: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings, "media_bulk_concurrency", 4)
    # a file database with no pooling gives every session its own connection
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'bulk.db'}", connect_args={"timeout": 30}, poolclass=NullPool
    )
    factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    async def _init() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_init())
    try:
        a = _create(factory, "a.jpg", derive=False)
        b = _create(factory, "b.jpg", derive=False)
        transformer = OverlapTransformer()
        ids = [a.id, b.id, a.id, b.id, a.id]

        results = asyncio.run(bulk.run(factory, "regenerate_all_variants", ids, transformer=transformer))

        assert [(r.asset_id, r.ok, r.error) for r in results] == [(asset_id, True, None) for asset_id in ids]
        assert transformer.max_per_asset == 1
        assert transformer.max_assets >= 2
        for asset_id in (a.id, b.id):
            assert variant_policy.status(_load(factory, asset_id)).has_all_light is True
    finally:
        asyncio.run(engine.dispose())
