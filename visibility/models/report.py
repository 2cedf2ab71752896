"""
Report model — one row per assemble_report job. Immutable once complete.
"""
from sqlalchemy import Column, Integer, Text, DateTime, JSON

from visibility.database import Base, utcnow


class Report(Base):
    __tablename__ = 'reports'

    id = Column(Text, primary_key=True)
    brand_id = Column(Text, nullable=False, index=True)
    job_id = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default='generating')
    overall_score = Column(Integer, nullable=True)
    score_snapshot = Column(JSON, nullable=True)
    insights = Column(JSON, default=list)
    recommendations = Column(JSON, default=list)
    report_data = Column(JSON, nullable=True)
    json_url = Column(Text, nullable=True)
    narrative_url = Column(Text, nullable=True)
    page_count = Column(Integer, nullable=True)
    size_bytes = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'brand_id': self.brand_id,
            'job_id': self.job_id,
            'status': self.status,
            'overall_score': self.overall_score,
            'score': self.score_snapshot,
            'insights': self.insights or [],
            'recommendations': self.recommendations or [],
            'artifacts': {
                'json_url': self.json_url,
                'narrative_url': self.narrative_url,
                'page_count': self.page_count,
                'size_bytes': self.size_bytes,
            },
            'error': self.error,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }
