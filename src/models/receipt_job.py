"""Job and step bookkeeping for the receipt workflow."""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database import Base
from src.models.enums import JobStatus, enum_values
from src.models.mixins import TimestampMixin


class ReceiptJob(Base, TimestampMixin):
    """One execution of the extraction workflow for a receipt.

    A re-run creates a new job for the same receipt; steps recorded for an
    earlier job are never reused.
    """

    __tablename__ = "receipt_jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    receipt_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("receipts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", native_enum=False, length=20, values_callable=enum_values),
        nullable=False,
        default=JobStatus.RUNNING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    receipt = relationship("Receipt", back_populates="jobs")
    steps = relationship(
        "JobStep",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="JobStep.position",
    )

    def __repr__(self) -> str:
        return f"<ReceiptJob(id={self.id}, receipt_id={self.receipt_id}, status={self.status})>"


class JobStep(Base):
    """Durable result of one completed workflow step."""

    __tablename__ = "job_steps"
    __table_args__ = (UniqueConstraint("job_id", "name", name="uq_job_steps_job_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    job_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("receipt_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    job = relationship("ReceiptJob", back_populates="steps")
