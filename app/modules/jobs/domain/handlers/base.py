"""
Base Job Handler
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from app.models.background_job import BackgroundJob


class BaseJobHandler(ABC):
    """
    Executes one job type.

    Returning normally acknowledges the job. Raising leaves it to the
    scheduler's backoff, or dead-letters it once attempts are exhausted.
    """

    @abstractmethod
    async def execute(self, job: BackgroundJob) -> Dict[str, Any]:
        """Run the job and return a JSON-serializable result."""

    @staticmethod
    def is_final_delivery(job: BackgroundJob) -> bool:
        """True when a raised error will dead-letter the job instead of retrying it."""
        return job.attempts >= job.max_attempts
