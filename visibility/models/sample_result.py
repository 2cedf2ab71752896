"""
SampleResult model — one append-only row per executed sampling request.
"""
from sqlalchemy import Column, Integer, Float, Text, DateTime, Index

from visibility.database import Base, utcnow


class SampleResult(Base):
    __tablename__ = 'sample_results'
    __table_args__ = (
        Index('ix_sample_results_brand_created', 'brand_id', 'created_at'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    brand_id = Column(Text, nullable=False)
    job_id = Column(Text, nullable=True, index=True)
    model = Column(Text, nullable=False)
    provider = Column(Text, default='')
    prompt_key = Column(Text, nullable=False)
    paraphrase_index = Column(Integer, nullable=False, default=0)
    intent = Column(Text, default='')
    prompt_text = Column(Text, default='')
    response_text = Column(Text, default='')
    input_tokens = Column(Integer, default=0)
    output_tokens = Column(Integer, default=0)
    total_tokens = Column(Integer, default=0)
    cost = Column(Float, default=0.0)
    execution_time_ms = Column(Integer, default=0)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'model': self.model,
            'provider': self.provider,
            'prompt_key': self.prompt_key,
            'paraphrase_index': self.paraphrase_index,
            'prompt_text': self.prompt_text,
            'response_text': self.response_text,
            'tokens': {
                'input': self.input_tokens,
                'output': self.output_tokens,
                'total': self.total_tokens,
            },
            'cost': self.cost,
            'execution_time_ms': self.execution_time_ms,
            'error': self.error,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
