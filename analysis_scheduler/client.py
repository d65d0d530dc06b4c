"""
Client for the API endpoint that creates analysis executions.

Each scheduled run gets its own execution record so earlier results are
preserved. The client never retries: a failed call leaves the analysis
due, and the next poll tries again.
"""

import logging
from typing import Optional, Tuple

import requests

from analysis_scheduler.config import ApiConfig
from analysis_scheduler.errors import ExecutionCreateError

logger = logging.getLogger(__name__)

EXECUTE_PATH = "/org/{organization_id}/projects/{project_id}/analyses/{analysis_id}/execute"


class ExecutionClient:
    """Creates new analysis executions through the HTTP API"""

    def __init__(self, config: Optional[ApiConfig] = None, session: Optional[requests.Session] = None):
        """
        Initialize the client.

        Args:
            config: API settings (base URL and timeouts)
            session: HTTP session to reuse across calls
        """
        self.config = config or ApiConfig()
        self.base_url = self.config.base_url.rstrip('/')
        self.timeout: Tuple[float, float] = (self.config.connect_timeout, self.config.read_timeout)
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "User-Agent": "analysis-scheduler",
        })

    def execute_url(self, organization_id: str, project_id: str, analysis_id: str) -> str:
        return self.base_url + EXECUTE_PATH.format(
            organization_id=organization_id,
            project_id=project_id,
            analysis_id=analysis_id,
        )

    def create_execution(
        self,
        organization_id: str,
        project_id: str,
        analysis_id: str,
        idempotency_key: Optional[str] = None
    ) -> str:
        """
        Ask the API to create a new execution of a scheduled analysis.

        Args:
            organization_id: Owning organization
            project_id: Owning project
            analysis_id: The scheduled analysis to execute
            idempotency_key: Sent as ``Idempotency-Key`` so the API can
                recognise repeated requests for the same due occurrence

        Returns:
            ID of the new execution

        Raises:
            ExecutionCreateError: On transport errors, timeouts, any status
                other than 201, or a response without an ``id``
        """
        url = self.execute_url(organization_id, project_id, analysis_id)
        headers = {"Content-Type": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = self.session.post(url, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ExecutionCreateError(f"Failed to call API at {url}: {e}") from e

        if response.status_code != 201:
            raise ExecutionCreateError(
                f"API returned status {response.status_code}",
                status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ExecutionCreateError(f"Failed to decode API response: {e}") from e

        execution_id = data.get("id") if isinstance(data, dict) else None
        if not execution_id:
            raise ExecutionCreateError("API response did not contain an execution id")

        logger.debug(f"Created execution {execution_id} via {url}")
        return str(execution_id)

    def close(self):
        self.session.close()
