import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from media_pipeline.db.base import Base


class ModuleScope(str, enum.Enum):
    global_ = "global"
    post = "post"


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    featured_media_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("media_assets.id", ondelete="SET NULL"), nullable=True, index=True
    )
    review_draft: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    modules: Mapped[list["PostModule"]] = relationship(
        "PostModule", back_populates="post", cascade="all, delete-orphan", lazy="selectin"
    )


class ModuleInstance(Base):
    __tablename__ = "module_instances"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    type: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    scope: Mapped[ModuleScope] = mapped_column(
        Enum(ModuleScope, values_callable=lambda e: [m.value for m in e]), nullable=False, default=ModuleScope.post
    )
    global_slug: Mapped[str | None] = mapped_column(String(190), nullable=True, unique=True)
    props: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    review_props: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PostModule(Base):
    __tablename__ = "post_modules"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    post_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    module_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("module_instances.id", ondelete="CASCADE"), nullable=False, index=True
    )
    overrides: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    review_overrides: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    post: Mapped[Post] = relationship("Post", back_populates="modules")
    module: Mapped[ModuleInstance] = relationship("ModuleInstance", lazy="joined")
