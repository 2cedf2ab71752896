"""
Pipeline stage contracts.

Every job type has one StageHandler. The worker claims a job, looks up its
handler in HANDLERS, calls handler.run(job) and records the returned
StageResult on the job. Handlers raise PipelineError subclasses for
job-boundary failures; per-item failures are absorbed and counted.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Type


@dataclass
class StageResult:
    """Uniform output from every stage handler."""
    result: Dict[str, Any] = field(default_factory=dict)
    processed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    cost: float = 0.0

    def to_job_result(self) -> Dict[str, Any]:
        """The dict written to jobs.result."""
        out = dict(self.result)
        out.setdefault('processed', self.processed)
        out.setdefault('failed', self.failed)
        out.setdefault('cost', round(self.cost, 6))
        if self.errors:
            out.setdefault('errors', self.errors[:20])
        return out


class StageHandler(ABC):
    """
    Base class for job handlers.

    `job` is the dict returned by the job store's claim: id, brand_id,
    pipeline_id, type, payload, retry_count and so on.
    """
    job_type: str = ''
    description: str = ''
    apis: List[str] = []

    @abstractmethod
    def run(self, job: Dict[str, Any]) -> StageResult:
        ...

    def estimate_cost(self, payload: Dict[str, Any]) -> float:
        """Optional: estimate spend for a job with this payload."""
        return 0.0


def get_handler(handlers: Dict[str, Type[StageHandler]], job_type: str) -> StageHandler:
    """Look up and instantiate the handler for a job type."""
    handler_cls = handlers.get(job_type)
    if not handler_cls:
        raise ValueError(f"No handler registered for job type '{job_type}'")
    return handler_cls()


def get_pipeline_info(handlers: Dict[str, Type[StageHandler]]) -> Dict[str, Any]:
    """Serialize the handler registry into a JSON-friendly dict."""
    return {
        job_type: {
            'description': cls.description or '',
            'apis': cls.apis if isinstance(cls.apis, list) else [],
        }
        for job_type, cls in handlers.items()
    }
