"""
VisibilityScore model — append-only history of the seven weighted components.
"""
from sqlalchemy import Column, Integer, Float, Text, DateTime, JSON, Index

from visibility.database import Base, utcnow


COMPONENT_FIELDS = (
    'prompt_sov',
    'generative_appearance',
    'citation_authority',
    'answer_quality',
    'voice_presence',
    'ai_traffic',
    'ai_conversions',
)


class VisibilityScore(Base):
    __tablename__ = 'visibility_scores'
    __table_args__ = (
        Index('ix_visibility_scores_brand_engine', 'brand_id', 'engine', 'calculated_at'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    brand_id = Column(Text, nullable=False)
    job_id = Column(Text, nullable=True)
    engine = Column(Text, nullable=False, default='aggregate')
    prompt_sov = Column(Float, nullable=False)
    generative_appearance = Column(Float, nullable=False)
    citation_authority = Column(Float, nullable=False)
    answer_quality = Column(Float, nullable=False)
    voice_presence = Column(Float, nullable=False)
    ai_traffic = Column(Float, nullable=False)
    ai_conversions = Column(Float, nullable=False)
    total_score = Column(Integer, nullable=False)
    calculation_metadata = Column(JSON, default=dict)
    calculated_at = Column(DateTime(timezone=True), default=utcnow)

    @property
    def components(self):
        return {name: getattr(self, name) for name in COMPONENT_FIELDS}

    def to_dict(self):
        return {
            'id': self.id,
            'brand_id': self.brand_id,
            'engine': self.engine,
            'components': self.components,
            'total_score': self.total_score,
            'metadata': self.calculation_metadata or {},
            'calculated_at': self.calculated_at.isoformat() if self.calculated_at else None,
        }
