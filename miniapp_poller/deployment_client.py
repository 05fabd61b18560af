from typing import Any, Awaitable, Callable, Optional

from miniapp_poller.base_client import BaseStatusClient
from miniapp_poller.config import Settings
from miniapp_poller.models import (
    DEPLOYMENT_READINESS,
    PollOutcome,
    PollRequest,
    StatusPollingConfig,
    StatusResponse,
)
from miniapp_poller.poller import StatusPoller

DEPLOYMENTS_PATH = "/v6/deployments"

READY = frozenset({"READY"})
FAILED = frozenset({"ERROR", "CANCELED"})
# Reported while the project has no deployment listed yet
NOT_FOUND = "NOT_FOUND"


class DeploymentClient(BaseStatusClient):
    """Vercel deployment listing, and waiting for the latest deployment to go live."""

    default_config = DEPLOYMENT_READINESS

    def __init__(
        self,
        base_url: str,
        token: str,
        team_id: Optional[str] = None,
        config: Optional[StatusPollingConfig] = None,
        on_status_change: Optional[Callable[[StatusResponse], Awaitable[Any]]] = None,
    ):
        super().__init__(
            base_url,
            headers={"Authorization": f"Bearer {token}"},
            config=config,
            on_status_change=on_status_change,
        )
        self.team_id = team_id

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "DeploymentClient":
        return cls(
            settings.vercel_api_url,
            settings.vercel_token,
            team_id=settings.vercel_team_id,
            **kwargs,
        )

    async def _get_latest_once(self, session, project_id: str) -> StatusResponse:
        params = {"projectId": project_id, "limit": "1"}
        if self.team_id:
            params["teamId"] = self.team_id

        data, elapsed_time = await self._request_json(
            session, "GET", DEPLOYMENTS_PATH, params=params
        )
        deployments = data.get("deployments") or []
        if not deployments:
            self.logger.debug(f"No deployment found yet for {project_id}")
            return StatusResponse(status=NOT_FOUND, raw_response={}, elapsed_time=elapsed_time)

        deployment = deployments[0]
        state = deployment.get("state") or deployment.get("readyState") or NOT_FOUND
        return StatusResponse(status=state, raw_response=deployment, elapsed_time=elapsed_time)

    async def get_latest_deployment(self, project_id: str) -> StatusResponse:
        async with self._session() as session:
            return await self._get_latest_once(session, project_id)

    async def wait_for_deployment(self, project_id: str) -> PollOutcome:
        """Poll the latest deployment until READY, ERROR/CANCELED or the timeout"""
        poller = StatusPoller(on_status_change=self.on_status_change)

        async with self._session() as session:

            async def fetch_status(resource_id: str) -> StatusResponse:
                return await self._get_latest_once(session, resource_id)

            request = PollRequest.from_config(
                project_id,
                fetch_status,
                self.config,
                terminal_success=READY,
                terminal_failure=FAILED,
            )
            outcome = await poller.poll(request)

        if outcome.succeeded and outcome.response is not None:
            self.logger.info(f"Deployment ready at {outcome.response.raw_response.get('url')}")
        return outcome
