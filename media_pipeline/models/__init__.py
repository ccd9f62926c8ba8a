from media_pipeline.db.base import Base  # noqa: F401
from media_pipeline.models.content import ModuleInstance, ModuleScope, Post, PostModule  # noqa: F401
from media_pipeline.models.media import MediaActivityEvent, MediaAsset  # noqa: F401

__all__ = [
    "Base",
    "MediaAsset",
    "MediaActivityEvent",
    "ModuleInstance",
    "ModuleScope",
    "Post",
    "PostModule",
]
