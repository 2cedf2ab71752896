"""
Brand directory row — owned by the surrounding product, read-only to the pipeline.
"""
from sqlalchemy import Column, Text, Float, DateTime, JSON

from visibility.database import Base, utcnow


class Brand(Base):
    __tablename__ = 'brands'

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=False)
    domain = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    competitors = Column(JSON, default=list)  # competitor domains
    monthly_budget = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
