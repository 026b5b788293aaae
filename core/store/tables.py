"""SQLAlchemy ORM tables for projects, scans, files and chunks.

Files and chunks are flat tables keyed by surrogate ids. A chunk points at
its file through ``file_row_id``; path-based joins are resolved explicitly
by the store and the assembler instead of through ORM relationships.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for all tables."""


class ProjectRow(Base):
    """A tracked repository and its pipeline status."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    repo_full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    remote_url: Mapped[str] = mapped_column(Text, nullable=False)
    default_branch: Mapped[str] = mapped_column(String(255), nullable=False, default="main")
    selected_branch: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_commit_sha: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    total_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_lines: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # pending | scanning | ready | failed
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    current_stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    stage_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    exclusion_rules_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    last_kb_scan_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stack: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    scanned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ScanRow(Base):
    """One pipeline execution against a project."""

    __tablename__ = "scans"
    __table_args__ = (Index("idx_scans_project_status", "project_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    # manual | webhook
    trigger: Mapped[str] = mapped_column(String(16), nullable=False)
    is_incremental: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # running | completed | failed
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    current_stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    stage_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    commit_sha: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    previous_commit_sha: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    scanner_version: Mapped[str] = mapped_column(String(16), nullable=False)
    exclusion_rules_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    files_scanned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    files_excluded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    chunks_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_lines: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stage_timings: Mapped[dict[str, int]] = mapped_column(JSON, nullable=False, default=dict)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    kb_scan_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    kb_valid: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    warnings: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


class FileRow(Base):
    """One file of a project's current manifest."""

    __tablename__ = "files"
    __table_args__ = (
        UniqueConstraint("project_id", "path", name="uq_files_project_path"),
        Index("idx_files_project_file_id", "project_id", "file_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    file_id: Mapped[str] = mapped_column(String(16), nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    extension: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    language: Mapped[str] = mapped_column(String(32), nullable=False, default="plaintext")
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    line_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sha1: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    is_binary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_excluded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    exclusion_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    framework_hints: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    symbols_declared: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    imports: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    file_modified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rules_version: Mapped[str] = mapped_column(String(32), nullable=False)


class ChunkRow(Base):
    """One chunk of a file in the current manifest."""

    __tablename__ = "chunks"
    __table_args__ = (
        Index("idx_chunks_project_path", "project_id", "path", "start_line"),
        Index("idx_chunks_project_chunk_id", "project_id", "chunk_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    file_row_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("files.id", ondelete="CASCADE"), nullable=False
    )
    file_id: Mapped[str] = mapped_column(String(16), nullable=False)
    chunk_id: Mapped[str] = mapped_column(String(64), nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    file_sha1: Mapped[str] = mapped_column(String(40), nullable=False)
    start_line: Mapped[int] = mapped_column(Integer, nullable=False)
    end_line: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    is_complete_file: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    chunk_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_lines: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_sha1: Mapped[str] = mapped_column(String(40), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    symbols_declared: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    symbols_used: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    imports: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    references: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
