"""
Normalize stage — raw_pages → page_content + brand_claims.

Every raw page of the brand without a page_content row is parsed with
BeautifulSoup. A page that fails to parse is counted and skipped.
"""
import json
import logging
import re
from typing import Any, Dict, List

from bs4 import BeautifulSoup

from visibility.database import get_session
from visibility.logging_config import job_extra
from visibility.models.content import RawPage, PageContent, BrandClaim
from visibility.pipeline.base import StageHandler, StageResult
from visibility.services.brands import get_brand

logger = logging.getLogger('pipeline.normalize')

# (pattern, claim type)
CONTACT_PATTERNS = [
    (re.compile(r'(?:call|phone|tel):?\s*(\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4})', re.I), 'contact'),
    (re.compile(r'(?:email|mail|contact):?\s*([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})', re.I), 'contact'),
    (re.compile(r'(?:located|address|based)\s+(?:in|at)\s+([^.]+(?:CA|NY|TX|FL|[A-Z]{2}))', re.I), 'location'),
]

SERVICE_KEYWORDS = ('provide', 'offer', 'deliver', 'service', 'product', 'solution')
SENTENCE_SPLIT = re.compile(r'[.!?]+')


# ── Content extraction ────────────────────────────────────────────────────────

def extract_content(html: str) -> Dict[str, Any]:
    soup = BeautifulSoup(html, 'html.parser')

    title = soup.title.get_text(strip=True) if soup.title else ''
    meta = soup.find('meta', attrs={'name': 'description'})
    description = (meta.get('content') or '').strip() if meta else ''

    json_ld = []
    for script in soup.find_all('script', type='application/ld+json'):
        try:
            json_ld.append(json.loads(script.string or ''))
        except ValueError:
            logger.debug("Skipping unparseable JSON-LD block")

    headings = []
    for tag in soup.find_all(['h1', 'h2', 'h3', 'h4', 'h5', 'h6']):
        text = tag.get_text(' ', strip=True)
        if text:
            headings.append({'level': int(tag.name[1]), 'text': text})

    for tag in soup(['script', 'style', 'noscript']):
        tag.decompose()
    body = soup.body or soup
    main_content = body.get_text(' ', strip=True)

    return {
        'title': title,
        'description': description,
        'main_content': main_content,
        'headings': headings,
        'json_ld': json_ld,
        'word_count': len(main_content.split()),
    }


# ── Claim extraction ──────────────────────────────────────────────────────────

def _json_ld_nodes(json_ld: List[Any]):
    for block in json_ld:
        if isinstance(block, list):
            yield from (b for b in block if isinstance(b, dict))
        elif isinstance(block, dict):
            yield block
            for node in block.get('@graph') or []:
                if isinstance(node, dict):
                    yield node


def extract_claims(content: Dict[str, Any], source_url: str, brand: Dict[str, Any]) -> List[Dict[str, Any]]:
    claims = []

    def add(text, claim_type, confidence, context, extracted_by):
        claims.append({
            'text': text,
            'type': claim_type,
            'confidence': confidence,
            'source_url': source_url,
            'source_context': context,
            'extracted_by': extracted_by,
        })

    for node in _json_ld_nodes(content['json_ld']):
        if node.get('@type') != 'Organization':
            continue
        if node.get('name'):
            add(f"Company name: {node['name']}", 'company_info', 0.95,
                'JSON-LD Organization schema', 'json_ld_parser')
        if node.get('address'):
            add(f"Company address: {json.dumps(node['address'])}", 'location', 0.9,
                'JSON-LD Organization address', 'json_ld_parser')

    for heading in content['headings']:
        lowered = heading['text'].lower()
        if 'service' in lowered or 'product' in lowered:
            add(heading['text'], 'service_claim', 0.7, f"H{heading['level']} heading", 'heading_parser')

    text = content['main_content']
    for pattern, claim_type in CONTACT_PATTERNS:
        for match in pattern.finditer(text):
            add(match.group(0), claim_type, 0.8, 'Main content text', 'regex_parser')

    brand_name = (brand.get('name') or brand['domain']).lower()
    for sentence in SENTENCE_SPLIT.split(text):
        lowered = sentence.lower()
        if brand_name not in lowered and 'we' not in lowered and 'our' not in lowered:
            continue
        stripped = sentence.strip()
        if any(k in lowered for k in SERVICE_KEYWORDS) and 20 < len(stripped) < 200:
            add(stripped, 'service_claim', 0.6, 'Main content sentence', 'content_analyzer')

    return claims


# ── Stage handler ─────────────────────────────────────────────────────────────

def normalize_brand_pages(brand: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize all pending raw pages in one transaction."""
    session = get_session()
    try:
        pending = (
            session.query(RawPage)
            .outerjoin(PageContent, PageContent.raw_page_id == RawPage.id)
            .filter(RawPage.brand_id == brand['id'], PageContent.id.is_(None))
            .order_by(RawPage.id.asc())
            .all()
        )

        processed = 0
        claim_count = 0
        errors = []
        for page in pending:
            try:
                content = extract_content(page.html or '')
            except Exception as e:
                logger.warning("Failed to normalize %s: %s", page.url, e)
                errors.append(f"{page.url}: {e}")
                continue

            session.add(PageContent(
                brand_id=brand['id'],
                raw_page_id=page.id,
                url=page.url,
                title=content['title'] or page.title,
                description=content['description'] or page.meta_description,
                main_content=content['main_content'],
                headings=content['headings'],
                json_ld=content['json_ld'],
                word_count=content['word_count'],
            ))
            for claim in extract_claims(content, page.url, brand):
                session.add(BrandClaim(
                    brand_id=brand['id'],
                    claim_text=claim['text'],
                    claim_type=claim['type'],
                    confidence=claim['confidence'],
                    source_url=claim['source_url'],
                    source_context=claim['source_context'],
                    extracted_by=claim['extracted_by'],
                ))
                claim_count += 1
            processed += 1

        session.commit()
        return {'pages': len(pending), 'processed': processed, 'claims': claim_count, 'errors': errors}
    except Exception:
        session.rollback()
        logger.error("Failed to normalize pages for brand %s", brand['id'], exc_info=True)
        raise
    finally:
        session.close()


class NormalizeHandler(StageHandler):
    job_type = 'normalize'
    description = 'HTML → structured page content and brand claims'
    apis = []

    def run(self, job):
        brand = get_brand(job['brand_id'])
        summary = normalize_brand_pages(brand)
        logger.info("Normalized %d/%d pages for brand %s (%d claims)",
                    summary['processed'], summary['pages'], brand['id'], summary['claims'],
                    extra=job_extra(job))
        return StageResult(
            result={
                'pagesProcessed': summary['processed'],
                'claimsExtracted': summary['claims'],
            },
            processed=summary['processed'],
            failed=len(summary['errors']),
            errors=summary['errors'],
        )


HANDLERS = {
    'normalize': NormalizeHandler,
}
