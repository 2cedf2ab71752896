"""
Error taxonomy for the sampling-and-scoring pipeline.

Every error a stage handler can raise derives from PipelineError. The worker
reads `retryable` to decide whether a failed job goes back to the queue or
fails outright.
"""


class PipelineError(Exception):
    """Base class for job-boundary failures."""
    retryable = True


# ── Provider errors ──────────────────────────────────────────────────────────

class ProviderError(PipelineError):
    """Non-2xx (or otherwise failed) response from an LLM provider."""

    def __init__(self, status, body, model=None):
        self.status = status
        self.body = body
        self.model = model
        label = f" ({model})" if model else ''
        super().__init__(f"Provider error{label}: status={status} body={str(body)[:300]}")


class TransientProviderError(ProviderError):
    """Timeout, 5xx or rate-limit. Retried inside the invocation client."""
    retryable = True


class PermanentProviderError(ProviderError):
    """4xx auth/validation failure. Never retried."""
    retryable = False


class ProviderTimeout(TransientProviderError):
    """No response within the per-call timeout."""

    def __init__(self, timeout, model=None):
        self.timeout = timeout
        super().__init__(None, f"timed out after {timeout}s", model=model)


class UnknownModel(PipelineError):
    retryable = False

    def __init__(self, model):
        self.model = model
        super().__init__(f"Unknown model: {model}")


# ── Stage errors ─────────────────────────────────────────────────────────────

class BudgetExceeded(PipelineError):
    """Projected sampling spend would exceed the brand's monthly budget."""
    retryable = False

    def __init__(self, brand_id, spend, estimated_cost, budget):
        self.brand_id = brand_id
        self.spend = spend
        self.estimated_cost = estimated_cost
        self.budget = budget
        super().__init__(
            f"Budget exceeded for brand {brand_id}: spent ${spend:.2f} + "
            f"estimated ${estimated_cost:.2f} > budget ${budget:.2f}"
        )


class NoData(PipelineError):
    """Scoring window contains no sample results."""
    retryable = False


class JobDependencyFailed(PipelineError):
    retryable = False

    def __init__(self, job_id, dependency_id):
        self.job_id = job_id
        self.dependency_id = dependency_id
        super().__init__(f"dependency {dependency_id} failed")


class CrawlBlocked(PipelineError):
    """robots.txt disallows crawling the brand's site."""
    retryable = False


# ── Job store errors ─────────────────────────────────────────────────────────

class DuplicateIdempotencyKey(PipelineError):
    """An active job already holds this idempotency key."""

    def __init__(self, key, existing_job_id):
        self.key = key
        self.existing_job_id = existing_job_id
        super().__init__(f"Idempotency key '{key}' already held by job {existing_job_id}")


class JobNotFound(PipelineError):
    retryable = False


class JobStateError(PipelineError):
    """Requested transition is not allowed from the job's current status."""
    retryable = False


# ── Coordinator errors ───────────────────────────────────────────────────────

class PipelineConflict(PipelineError):
    """A pipeline is already queued or running for the brand."""
    retryable = False


class UnknownProfile(PipelineError):
    retryable = False


class BrandNotFound(PipelineError):
    retryable = False


class PipelineNotFound(PipelineError):
    retryable = False


class ReportNotFound(PipelineError):
    retryable = False
