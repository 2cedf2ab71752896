"""
Onboard stage — crawl the brand's site into raw_pages.

  1. robots.txt: a `Disallow: /` for `*` or any bot agent blocks the crawl
     unless the payload sets respectRobots=false. Crawl-delay is honoured.
  2. Discovery: seed URLs (homepage + sitemap.xml) → sitemap <loc> entries
     and same-domain links, up to maxPages.
  3. Crawl in batches of CRAWL_BATCH_SIZE with a thread pool.
  4. Store one RawPage per 200 response in a single transaction.
"""
import hashlib
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup

from visibility.config import CRAWLER_USER_AGENT, CRAWL_BATCH_SIZE, CRAWL_MAX_PAGES
from visibility.database import get_session, utcnow
from visibility.errors import CrawlBlocked
from visibility.logging_config import job_extra
from visibility.models.content import RawPage
from visibility.pipeline.base import StageHandler, StageResult
from visibility.services.brands import get_brand

logger = logging.getLogger('pipeline.onboard')

SITEMAP_LOC = re.compile(r'<loc>(.*?)</loc>', re.S)
ROBOTS_TIMEOUT = 10
SEED_TIMEOUT = 15
PAGE_TIMEOUT = 30


def _new_session(user_agent: str) -> requests.Session:
    session = requests.Session()
    session.headers.update({
        'User-Agent': user_agent,
        'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
        'Accept-Language': 'en-US,en;q=0.5',
    })
    return session


# ── robots.txt ────────────────────────────────────────────────────────────────

def parse_robots(text: str) -> Dict[str, Any]:
    """Apply the `*` and bot-agent sections of a robots.txt body."""
    allowed = True
    crawl_delay = 0
    restrictions = []
    relevant = False

    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        field, _, value = line.partition(':')
        field = field.strip().lower()
        value = value.strip()

        if field == 'user-agent':
            agent = value.lower()
            relevant = agent == '*' or 'bot' in agent
        elif relevant and field == 'disallow':
            if value == '/':
                allowed = False
            elif value:
                restrictions.append(value)
        elif relevant and field == 'crawl-delay':
            try:
                crawl_delay = int(float(value))
            except ValueError:
                crawl_delay = 0

    return {'allowed': allowed, 'crawlDelay': crawl_delay, 'restrictions': restrictions}


def analyze_robots(http: requests.Session, domain: str) -> Dict[str, Any]:
    """Fetch and parse robots.txt. A missing file allows crawling; a fetch error allows it slowly."""
    try:
        resp = http.get(f"https://{domain}/robots.txt", timeout=ROBOTS_TIMEOUT)
    except requests.exceptions.RequestException as e:
        logger.warning("Failed to fetch robots.txt for %s: %s", domain, e)
        return {'allowed': True, 'crawlDelay': 1, 'restrictions': []}
    if not resp.ok:
        return {'allowed': True, 'crawlDelay': 0, 'restrictions': []}
    return parse_robots(resp.text)


# ── Discovery ─────────────────────────────────────────────────────────────────

def extract_sitemap_urls(xml: str) -> List[str]:
    return [loc.strip() for loc in SITEMAP_LOC.findall(xml or '')]


def extract_links(html: str, base_url: str, domain: str) -> List[str]:
    """Absolute same-domain links without fragments."""
    soup = BeautifulSoup(html, 'html.parser')
    links = []
    for a in soup.find_all('a', href=True):
        url = urljoin(base_url, a['href'].strip())
        if domain in url and '#' not in url and url.startswith('http'):
            links.append(url)
    return links


def discover_urls(http: requests.Session, seed_urls: List[str], domain: str,
                  max_pages: int) -> List[str]:
    discovered: List[str] = []
    seen = set()

    def add(url):
        if url not in seen and len(discovered) < max_pages:
            seen.add(url)
            discovered.append(url)

    for seed in dict.fromkeys(seed_urls):
        try:
            resp = http.get(seed, timeout=SEED_TIMEOUT)
        except requests.exceptions.RequestException as e:
            logger.warning("Failed to fetch seed %s: %s", seed, e)
            continue
        if not resp.ok:
            continue

        content_type = resp.headers.get('content-type', '')
        if 'xml' in content_type:
            for url in extract_sitemap_urls(resp.text):
                if domain in url:
                    add(url)
        elif 'html' in content_type:
            add(seed)
            for url in extract_links(resp.text, seed, domain):
                add(url)

        if len(discovered) >= max_pages:
            break

    return discovered


# ── Crawl ─────────────────────────────────────────────────────────────────────

def extract_page_metadata(html: str, url: str) -> Dict[str, Optional[str]]:
    soup = BeautifulSoup(html, 'html.parser')
    title = soup.title.get_text(strip=True) if soup.title else ''
    meta = soup.find('meta', attrs={'name': 'description'})
    canonical = soup.find('link', rel='canonical')
    return {
        'title': title,
        'meta_description': (meta.get('content') or '').strip() if meta else '',
        'canonical_url': urljoin(url, canonical['href']) if canonical and canonical.get('href') else None,
    }


def crawl_page(http: requests.Session, url: str) -> Dict[str, Any]:
    """Fetch one page. Transport errors come back as status 0 with `error` set."""
    try:
        resp = http.get(url, timeout=PAGE_TIMEOUT)
    except requests.exceptions.RequestException as e:
        return {'url': url, 'status_code': 0, 'content_type': '', 'html': '', 'error': str(e)}

    content_type = resp.headers.get('content-type', '')
    html = resp.text or ''
    page = {
        'url': url,
        'status_code': resp.status_code,
        'content_type': content_type,
        'html': html,
        'content_hash': hashlib.sha256(html.encode('utf-8')).hexdigest(),
        'title': '',
        'meta_description': '',
        'canonical_url': None,
    }
    if 'html' in content_type:
        page.update(extract_page_metadata(html, url))
    return page


def crawl_urls(http: requests.Session, urls: List[str], crawl_delay: int,
               batch_size: int = CRAWL_BATCH_SIZE) -> List[Dict[str, Any]]:
    results = []
    with ThreadPoolExecutor(max_workers=batch_size) as executor:
        for start in range(0, len(urls), batch_size):
            batch = urls[start:start + batch_size]
            results.extend(executor.map(lambda u: crawl_page(http, u), batch))
            if crawl_delay > 0 and start + batch_size < len(urls):
                time.sleep(crawl_delay)
    return results


def store_raw_pages(brand_id: str, job_id: str, pages: List[Dict[str, Any]]) -> List[int]:
    """Persist 200 responses. Returns the new raw_page ids."""
    session = get_session()
    try:
        rows = []
        for page in pages:
            if page['status_code'] != 200 or not page['html']:
                continue
            row = RawPage(
                brand_id=brand_id,
                job_id=job_id,
                url=page['url'],
                canonical_url=page.get('canonical_url') or page['url'],
                status_code=page['status_code'],
                content_type=page['content_type'],
                content_hash=page['content_hash'],
                title=page.get('title') or '',
                meta_description=page.get('meta_description') or '',
                html=page['html'],
                content_length=len(page['html']),
                fetched_at=utcnow(),
            )
            session.add(row)
            rows.append(row)
        session.commit()
        return [r.id for r in rows]
    except Exception:
        session.rollback()
        logger.error("Failed to store raw pages for brand %s", brand_id, exc_info=True)
        raise
    finally:
        session.close()


# ── Stage handler ─────────────────────────────────────────────────────────────

class OnboardHandler(StageHandler):
    job_type = 'onboard'
    description = 'Crawl the brand site (robots.txt, sitemap, same-domain links)'
    apis = ['HTTP']

    def __init__(self, http: requests.Session = None):
        self.http = http

    def run(self, job):
        payload = job.get('payload') or {}
        brand = get_brand(job['brand_id'])
        domain = brand['domain']
        http = self.http or _new_session(payload.get('userAgent') or CRAWLER_USER_AGENT)

        robots = analyze_robots(http, domain)
        if not robots['allowed'] and payload.get('respectRobots', True):
            raise CrawlBlocked(f"Crawling blocked by robots.txt for {domain}")

        seeds = payload.get('seedUrls') or [f"https://{domain}", f"https://{domain}/sitemap.xml"]
        max_pages = int(payload.get('maxPages') or CRAWL_MAX_PAGES)
        urls = discover_urls(http, seeds, domain, max_pages)
        logger.info("Discovered %d URLs for %s", len(urls), domain, extra=job_extra(job))

        pages = crawl_urls(http, urls, robots['crawlDelay'])
        raw_page_ids = store_raw_pages(brand['id'], job['id'], pages)
        failed = len(pages) - len(raw_page_ids)
        logger.info("Stored %d of %d crawled pages for %s", len(raw_page_ids), len(pages), domain,
                    extra=job_extra(job))

        return StageResult(
            result={
                'crawledPages': len(raw_page_ids),
                'rawPageIds': raw_page_ids,
                'discoveredUrls': len(urls),
                'robotsAnalysis': robots,
            },
            processed=len(raw_page_ids),
            failed=failed,
            errors=[f"{p['url']}: {p.get('error') or p['status_code']}"
                    for p in pages if p['status_code'] != 200],
        )


HANDLERS = {
    'onboard': OnboardHandler,
}
