"""
Crawled and normalized brand content — raw pages, extracted page content,
claims and embedding chunks. Written by the onboard/normalize/embed stages,
read by the sampling context builder.
"""
from sqlalchemy import Column, Integer, Float, Text, DateTime, JSON, ForeignKey

from visibility.database import Base, utcnow


class RawPage(Base):
    __tablename__ = 'raw_pages'

    id = Column(Integer, primary_key=True, autoincrement=True)
    brand_id = Column(Text, nullable=False, index=True)
    job_id = Column(Text, nullable=True)
    url = Column(Text, nullable=False)
    canonical_url = Column(Text, nullable=True)
    status_code = Column(Integer, nullable=False)
    content_type = Column(Text, default='')
    content_hash = Column(Text, default='')
    title = Column(Text, default='')
    meta_description = Column(Text, default='')
    html = Column(Text, default='')
    content_length = Column(Integer, default=0)
    fetched_at = Column(DateTime(timezone=True), default=utcnow)


class PageContent(Base):
    __tablename__ = 'page_content'

    id = Column(Integer, primary_key=True, autoincrement=True)
    brand_id = Column(Text, nullable=False, index=True)
    raw_page_id = Column(Integer, ForeignKey('raw_pages.id'), nullable=True)
    url = Column(Text, nullable=False)
    title = Column(Text, default='')
    description = Column(Text, default='')
    main_content = Column(Text, default='')
    headings = Column(JSON, default=list)
    json_ld = Column(JSON, default=list)
    word_count = Column(Integer, default=0)
    extracted_at = Column(DateTime(timezone=True), default=utcnow)


class BrandClaim(Base):
    __tablename__ = 'brand_claims'

    id = Column(Integer, primary_key=True, autoincrement=True)
    brand_id = Column(Text, nullable=False, index=True)
    claim_text = Column(Text, nullable=False)
    claim_type = Column(Text, nullable=False)
    confidence = Column(Float, default=0.0)
    source_url = Column(Text, default='')
    source_context = Column(Text, default='')
    extracted_by = Column(Text, default='')
    extracted_at = Column(DateTime(timezone=True), default=utcnow)


class ContentChunk(Base):
    __tablename__ = 'content_chunks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    brand_id = Column(Text, nullable=False, index=True)
    page_content_id = Column(Integer, ForeignKey('page_content.id'), nullable=True)
    chunk_index = Column(Integer, default=0)
    chunk_type = Column(Text, default='paragraph')
    chunk_text = Column(Text, nullable=False)
    token_count = Column(Integer, default=0)
    embedding = Column(JSON, nullable=True)
    embedding_model = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
