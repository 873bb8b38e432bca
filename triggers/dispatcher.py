"""
Client for the workflow execution service.

The polling engine hands every detected event to
``trigger_workflow_execution``; running the workflow's actions is the
execution service's job.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from config.settings import config

logger = logging.getLogger(__name__)


class WorkflowDispatcher(Protocol):
    async def trigger_workflow_execution(
        self, workflow_id: int, trigger_data: Dict[str, Any]
    ) -> Any: ...


class HttpWorkflowDispatcher:
    def __init__(self, base_url: Optional[str] = None, http: Optional[httpx.AsyncClient] = None):
        self._base_url = (base_url or config.workflow_dispatch_url).rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=config.http_timeout_seconds)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def trigger_workflow_execution(
        self, workflow_id: int, trigger_data: Dict[str, Any]
    ) -> Dict[str, Any]:
        """POST the trigger payload; raises ``httpx.HTTPStatusError`` on rejection."""
        resp = await self._http.post(
            f"{self._base_url}/workflows/{workflow_id}/execute",
            json={"triggerData": trigger_data},
        )
        resp.raise_for_status()
        logger.debug("Dispatched workflow %s (HTTP %s)", workflow_id, resp.status_code)
        return resp.json() if resp.content else {}
