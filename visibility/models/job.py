"""
Job model — one row per unit of pipeline work, plus dependency edges and an
append-only audit log.

Jobs are never deleted; they end as complete, failed or cancelled.
"""
from sqlalchemy import (
    Column, Integer, Text, DateTime, JSON, ForeignKey, Index, CheckConstraint,
)

from visibility.database import Base, utcnow


class Job(Base):
    __tablename__ = 'jobs'
    __table_args__ = (
        CheckConstraint('retry_count <= max_retries', name='ck_jobs_retry_bound'),
        Index('ix_jobs_claim', 'status', 'priority', 'created_at'),
    )

    id = Column(Text, primary_key=True)
    brand_id = Column(Text, nullable=False, index=True)
    pipeline_id = Column(Text, nullable=True, index=True)
    type = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default='queued')
    priority = Column(Integer, nullable=False, default=0)
    payload = Column(JSON, default=dict)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    idempotency_key = Column(Text, nullable=True, unique=True)
    available_at = Column(DateTime(timezone=True), default=utcnow)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self, depends_on=None):
        return {
            'id': self.id,
            'brand_id': self.brand_id,
            'pipeline_id': self.pipeline_id,
            'type': self.type,
            'status': self.status,
            'priority': self.priority,
            'payload': self.payload or {},
            'result': self.result,
            'error': self.error,
            'retry_count': self.retry_count,
            'max_retries': self.max_retries,
            'idempotency_key': self.idempotency_key,
            'depends_on': list(depends_on or []),
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


class JobDependency(Base):
    __tablename__ = 'job_dependencies'

    job_id = Column(Text, ForeignKey('jobs.id'), primary_key=True)
    depends_on_id = Column(Text, ForeignKey('jobs.id'), primary_key=True, index=True)


class JobLog(Base):
    __tablename__ = 'job_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Text, ForeignKey('jobs.id'), nullable=False, index=True)
    level = Column(Text, nullable=False, default='info')
    message = Column(Text, nullable=False)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
