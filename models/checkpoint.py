from sqlalchemy import Column, String, DateTime, Index, JSON
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base


class CheckpointEntry(Base):
    """
    Key-value row backing the database checkpoint backend.

    Purpose:
    - Survive process restarts so a job resumes from its last checkpoint
    - Share checkpoints between workers pointed at the same database

    Design:
    - One row per checkpoint, keyed "<job_id>/<checkpoint_id>"
    - payload stores the serialized ProcessingCheckpoint
    - Rows are immutable; retention deletes them, nothing updates them
    """
    __tablename__ = "processing_checkpoints"

    key = Column(String(512), primary_key=True)
    job_id = Column(String(255), nullable=False)
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_processing_checkpoints_job", "job_id"),
    )
