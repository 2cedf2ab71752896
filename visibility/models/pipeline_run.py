"""
PipelineRun model — one row per enqueuePipeline call, grouping its job chain.
"""
from sqlalchemy import Column, Text, DateTime, JSON

from visibility.database import Base, utcnow


class PipelineRun(Base):
    __tablename__ = 'pipelines'

    id = Column(Text, primary_key=True)
    brand_id = Column(Text, nullable=False, index=True)
    profile = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default='running')
    steps = Column(JSON, nullable=False)
    options = Column(JSON, default=dict)
    first_job_id = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)
