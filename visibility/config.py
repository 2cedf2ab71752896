"""
Centralized configuration — env vars, queue tunables, pipeline constants.
"""
import os


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis ─────────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
RQ_QUEUE_NAME = os.getenv('RQ_QUEUE_NAME', 'visibility')

# ── PostgreSQL ────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')

# ── Provider credentials (env var name per provider family) ──────────────────
PROVIDER_CREDENTIAL_ENV = {
    'anthropic':  'ANTHROPIC_API_KEY',
    'openai':     'OPENAI_API_KEY',
    'google':     'GOOGLE_API_KEY',
    'xai':        'XAI_API_KEY',
    'mistral':    'MISTRAL_API_KEY',
    'openrouter': 'OPENROUTER_API_KEY',
    'perplexity': 'PERPLEXITY_API_KEY',
}

# ── OpenAI (embeddings) ──────────────────────────────────────────────────────
OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
EMBEDDING_MODEL = os.getenv('EMBEDDING_MODEL', 'text-embedding-3-small')

# ── Cloudflare R2 ─────────────────────────────────────────────────────────────
R2_ACCESS_KEY_ID = os.getenv('R2_ACCESS_KEY_ID')
R2_SECRET_ACCESS_KEY = os.getenv('R2_SECRET_ACCESS_KEY')
R2_BUCKET_NAME = os.getenv('R2_BUCKET_NAME')
R2_ENDPOINT_URL = os.getenv('R2_ENDPOINT_URL')
R2_PUBLIC_URL = os.getenv('R2_PUBLIC_URL')

# ── Slack notifications ──────────────────────────────────────────────────────
SLACK_WEBHOOK_URL = os.getenv('SLACK_WEBHOOK_URL')

# ── Crawler ──────────────────────────────────────────────────────────────────
CRAWLER_USER_AGENT = os.getenv(
    'CRAWLER_USER_AGENT', 'VisibilityBot/1.0 (+https://example.com/bot)'
)
CRAWL_BATCH_SIZE = 5
CRAWL_MAX_PAGES = 50

# ── Job types (pipeline order) ───────────────────────────────────────────────
JOB_TYPES = [
    'onboard',
    'normalize',
    'embed',
    'sample',
    'score',
    'assemble_report',
]

# ── Job status values ─────────────────────────────────────────────────────────
TERMINAL_JOB_STATUSES = ('complete', 'failed', 'cancelled')

# ── Job runner ───────────────────────────────────────────────────────────────
JOB_DEFAULT_MAX_RETRIES = int(os.getenv('JOB_DEFAULT_MAX_RETRIES', 3))
JOB_BACKOFF_BASE_SECONDS = float(os.getenv('JOB_BACKOFF_BASE_SECONDS', 1.0))
JOB_BACKOFF_MAX_SECONDS = float(os.getenv('JOB_BACKOFF_MAX_SECONDS', 300.0))
JOB_STALE_AFTER_SECONDS = int(os.getenv('JOB_STALE_AFTER_SECONDS', 3600))
WORKER_POLL_INTERVAL = float(os.getenv('WORKER_POLL_INTERVAL', 5.0))
CHAINED_JOB_PRIORITY = 4
PIPELINE_FIRST_JOB_PRIORITY = 5

# Per-type retry limits; anything not listed uses JOB_DEFAULT_MAX_RETRIES
JOB_MAX_RETRIES = {
    'sample': 2,
}

# ── Provider invocation ──────────────────────────────────────────────────────
PROVIDER_MAX_ATTEMPTS = 3
PROVIDER_TIMEOUT_SECONDS = 30
PROVIDER_BACKOFF_SECONDS = [2, 4, 8]

# ── Sampling ─────────────────────────────────────────────────────────────────
SAMPLING_BATCH_SIZE = 3
SAMPLING_BATCH_PAUSE_SECONDS = 1.0
SAMPLING_DEFAULT_TEMPERATURE = 0.7
AVERAGE_COST_PER_CALL = 0.02
CUSTOM_PROFILE_COST_PER_CALL = 1.0
DEFAULT_MONTHLY_BUDGET = 100.0
BUDGET_WINDOW_DAYS = 30

# ── Scoring ──────────────────────────────────────────────────────────────────
SCORING_LOOKBACK_DAYS = 30
SCORING_MAX_ROWS = 500
INDUSTRY_AVERAGE_SCORE = 65
