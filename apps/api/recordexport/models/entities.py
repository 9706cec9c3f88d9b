from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Optional

from sqlalchemy import JSON, DateTime, Enum, Integer, String, Text, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from recordexport.db.session import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class ExportStatusEnum(StrEnum):
    PROCESSING = "processing"
    COMPLETE = "complete"
    TERMINATED = "terminated"
    ARCHIVED = "archived"


TERMINAL_STATUSES = frozenset({ExportStatusEnum.ARCHIVED, ExportStatusEnum.TERMINATED})


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class ExportJob(TimestampMixin, Base):
    __tablename__ = "export_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Query
    record_type: Mapped[str] = mapped_column(String(50), nullable=False)
    filters: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    order: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    query: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    match_criteria: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Access scope, frozen at creation
    owned_by: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    managed_user_names: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    permitted_property_keys: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    # Output
    format: Mapped[str] = mapped_column(String(50), nullable=False)
    custom_export_params: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    password: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    requested_file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Lifecycle
    status: Mapped[Optional[ExportStatusEnum]] = mapped_column(
        Enum(ExportStatusEnum, name="export_status_enum"), nullable=True, index=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_on: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    # Set only once an archive has been written.
    file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __mapper_args__ = {"version_id_col": version}
