"""Client for the interview management service.

Only used to report the externally recorded interview count next to the
attendance tally; the tally stays authoritative for completion metrics.
"""
import logging
from typing import Optional

import requests
from django.conf import settings

from .exceptions import DependencyError, DependencyTimeout
from .models import Assignment

logger = logging.getLogger(__name__)


class InterviewCountClient:

    def __init__(self, base_url: str, timeout: float):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> Optional["InterviewCountClient"]:
        """Build a client from ``FIELD_OPS`` settings, or None when not configured."""
        config = getattr(settings, "FIELD_OPS", {})
        base_url = config.get("INTERVIEW_SERVICE_URL")
        if not base_url:
            return None
        return cls(base_url, config.get("INTERVIEW_SERVICE_TIMEOUT", 5.0))

    def count_for(self, assignment: Assignment) -> int:
        """Interviews recorded for the assignment's project by its resource."""
        params = {
            "project": assignment.project_id,
            "interviewer": assignment.resource.external_id,
            "date_from": assignment.start_date.isoformat(),
            "date_to": assignment.end_date.isoformat(),
        }
        try:
            response = requests.get(f"{self.base_url}/interviews/count", params=params, timeout=self.timeout)
            response.raise_for_status()
            return int(response.json()["count"])
        except requests.Timeout as e:
            logger.warning("Interview service timed out after %ss for assignment %s", self.timeout, assignment.id)
            raise DependencyTimeout(
                "Interview service did not answer in time",
                assignment_id=assignment.id,
                timeout_seconds=self.timeout,
            ) from e
        except (requests.RequestException, KeyError, TypeError, ValueError) as e:
            logger.warning("Interview service failed for assignment %s: %s", assignment.id, e)
            raise DependencyError(
                "Interview service request failed",
                assignment_id=assignment.id,
            ) from e
