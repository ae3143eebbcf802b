from __future__ import annotations

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text

from tasktrack.domain.entities import utcnow

from .db import Base


class TaskModel(Base):
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    priority = Column(String(10), nullable=False, default="medium")
    due_date = Column(Date, nullable=True)
    completed = Column(Boolean, nullable=False, default=False)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class TagModel(Base):
    __tablename__ = "tags"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(50), nullable=False)
    color = Column(String(20), nullable=False, default="gray")
    created_at = Column(DateTime, nullable=False, default=utcnow)


class TaskTagModel(Base):
    __tablename__ = "task_tags"

    task_id = Column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id = Column(
        String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True, index=True
    )
