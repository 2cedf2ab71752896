"""
Embed stage — page_content → content_chunks (+ vectors).

Main text is split into overlapping word windows. Title, description and
headings become their own chunks with negative indexes so they never collide
with body windows. Vectors come from the OpenAI embeddings API through the
'openai' circuit breaker; without a configured client the chunks are stored
without vectors and sampling still has text context.
"""
import logging
import math
from typing import Any, Dict, List

from visibility.config import EMBEDDING_MODEL
from visibility.database import get_session
from visibility.logging_config import job_extra
from visibility.extensions import openai_client
from visibility.models.content import PageContent, ContentChunk
from visibility.pipeline.base import StageHandler, StageResult
from visibility.services.circuit_breaker import get_breaker

logger = logging.getLogger('pipeline.embed')

CHUNK_SIZE = 500
CHUNK_OVERLAP = 50
EMBED_BATCH_SIZE = 100


def estimate_token_count(text: str) -> int:
    return math.ceil(len(text) / 4)


def split_text_into_chunks(text: str, chunk_size: int = CHUNK_SIZE,
                           overlap: int = CHUNK_OVERLAP) -> List[str]:
    words = (text or '').split()
    if not words:
        return []
    step = max(1, chunk_size - overlap)
    chunks = []
    for start in range(0, len(words), step):
        chunks.append(' '.join(words[start:start + chunk_size]))
        if start + chunk_size >= len(words):
            break
    return chunks


def build_chunks(page: Dict[str, Any], chunk_size: int = CHUNK_SIZE,
                 overlap: int = CHUNK_OVERLAP) -> List[Dict[str, Any]]:
    chunks = [
        {'index': i, 'type': 'paragraph', 'text': text}
        for i, text in enumerate(split_text_into_chunks(page.get('main_content'), chunk_size, overlap))
    ]
    if page.get('title'):
        chunks.append({'index': -1, 'type': 'title', 'text': page['title']})
    if page.get('description'):
        chunks.append({'index': -2, 'type': 'metadata', 'text': page['description']})
    for i, heading in enumerate(page.get('headings') or []):
        text = (heading.get('text') or '').strip()
        if text:
            chunks.append({'index': -(i + 10), 'type': 'heading', 'text': text})
    for chunk in chunks:
        chunk['token_count'] = estimate_token_count(chunk['text'])
    return chunks


def generate_embeddings(texts: List[str]) -> List[List[float]]:
    """One embeddings call through the openai breaker."""
    response = get_breaker('openai').call(
        openai_client.embeddings.create, model=EMBEDDING_MODEL, input=texts,
    )
    return [item.embedding for item in response.data]


def embed_chunks(chunks: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Attach 'embedding' to each chunk in place. Failed batches keep None."""
    if openai_client is None:
        logger.warning("OpenAI client not configured, storing %d chunks without vectors", len(chunks))
        return {'embedded': 0, 'failed': 0, 'errors': []}

    embedded = 0
    errors = []
    for start in range(0, len(chunks), EMBED_BATCH_SIZE):
        batch = chunks[start:start + EMBED_BATCH_SIZE]
        try:
            vectors = generate_embeddings([c['text'] for c in batch])
        except Exception as e:
            logger.warning("Embedding batch %d failed: %s", start // EMBED_BATCH_SIZE + 1, e)
            errors.append(str(e))
            continue
        for chunk, vector in zip(batch, vectors):
            chunk['embedding'] = vector
            embedded += 1
    return {'embedded': embedded, 'failed': len(chunks) - embedded, 'errors': errors}


def embed_brand_content(brand_id: str) -> Dict[str, Any]:
    """Chunk and embed every page_content row of the brand that has no chunks yet."""
    session = get_session()
    try:
        pages = (
            session.query(PageContent)
            .outerjoin(ContentChunk, ContentChunk.page_content_id == PageContent.id)
            .filter(PageContent.brand_id == brand_id, ContentChunk.id.is_(None))
            .order_by(PageContent.id.asc())
            .all()
        )

        planned = []
        for page in pages:
            for chunk in build_chunks({
                'main_content': page.main_content,
                'title': page.title,
                'description': page.description,
                'headings': page.headings,
            }):
                chunk['page_content_id'] = page.id
                planned.append(chunk)

        stats = embed_chunks(planned)
        for chunk in planned:
            vector = chunk.get('embedding')
            session.add(ContentChunk(
                brand_id=brand_id,
                page_content_id=chunk['page_content_id'],
                chunk_index=chunk['index'],
                chunk_type=chunk['type'],
                chunk_text=chunk['text'],
                token_count=chunk['token_count'],
                embedding=vector,
                embedding_model=EMBEDDING_MODEL if vector is not None else None,
            ))
        session.commit()
        return {'pages': len(pages), 'chunks': len(planned), **stats}
    except Exception:
        session.rollback()
        logger.error("Failed to embed content for brand %s", brand_id, exc_info=True)
        raise
    finally:
        session.close()


class EmbedHandler(StageHandler):
    job_type = 'embed'
    description = 'Chunk page content and generate embeddings'
    apis = ['OpenAI']

    def run(self, job):
        summary = embed_brand_content(job['brand_id'])
        logger.info("Chunked %d pages into %d chunks for brand %s (%d embedded)",
                    summary['pages'], summary['chunks'], job['brand_id'], summary['embedded'],
                    extra=job_extra(job))
        return StageResult(
            result={
                'pagesProcessed': summary['pages'],
                'chunksCreated': summary['chunks'],
                'embeddingsGenerated': summary['embedded'],
                'embeddingModel': EMBEDDING_MODEL,
            },
            processed=summary['chunks'],
            failed=summary['failed'],
            errors=summary['errors'],
        )


HANDLERS = {
    'embed': EmbedHandler,
}
