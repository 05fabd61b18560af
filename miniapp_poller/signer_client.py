from typing import Any, Awaitable, Callable, FrozenSet, Optional

from miniapp_poller.base_client import BaseStatusClient
from miniapp_poller.config import Settings
from miniapp_poller.models import (
    SIGNER_APPROVAL,
    PollOutcome,
    PollRequest,
    Signer,
    StatusPollingConfig,
    StatusResponse,
)
from miniapp_poller.poller import StatusPoller

SIGNER_PATH = "/v2/farcaster/signer"
SIGNED_KEY_PATH = "/v2/farcaster/signer/signed_key"

APPROVED = frozenset({"approved"})
# Opt-in failure set for wait_for_approval; by default only "approved" ends the wait
REVOKED = frozenset({"revoked"})


class SignerClient(BaseStatusClient):
    """Neynar signer endpoints, and waiting for a signer to be approved."""

    default_config = SIGNER_APPROVAL

    def __init__(
        self,
        base_url: str,
        api_key: str,
        config: Optional[StatusPollingConfig] = None,
        on_status_change: Optional[Callable[[StatusResponse], Awaitable[Any]]] = None,
    ):
        super().__init__(
            base_url,
            headers={"x-api-key": api_key, "accept": "application/json"},
            config=config,
            on_status_change=on_status_change,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "SignerClient":
        return cls(settings.neynar_api_url, settings.neynar_api_key, **kwargs)

    async def create_signer(self) -> Signer:
        async with self._session() as session:
            data, _ = await self._request_json(session, "POST", SIGNER_PATH)
        signer = Signer.from_payload(data)
        self.logger.info(f"Created signer {signer.signer_uuid} ({signer.status})")
        return signer

    async def register_signed_key(
        self,
        signer_uuid: str,
        app_fid: int,
        deadline: int,
        signature: str,
        redirect_url: Optional[str] = None,
        sponsored: bool = False,
    ) -> Signer:
        """Registers the app-signed key request so the signer can be approved.

        ``signature`` is the app custody account's EIP-712 SignedKeyRequest
        signature over the signer's public key and ``deadline``. The response
        carries the ``signer_approval_url`` the user has to open.
        """
        body = {
            "signer_uuid": signer_uuid,
            "app_fid": app_fid,
            "deadline": deadline,
            "signature": signature,
        }
        if redirect_url:
            body["redirect_url"] = redirect_url
        if sponsored:
            body["sponsor"] = {"sponsored_by_neynar": True}

        async with self._session() as session:
            data, _ = await self._request_json(session, "POST", SIGNED_KEY_PATH, json=body)
        signer = Signer.from_payload(data)
        self.logger.info(f"Registered signed key for {signer.signer_uuid} ({signer.status})")
        return signer

    async def _get_signer_once(self, session, signer_uuid: str) -> StatusResponse:
        data, elapsed_time = await self._request_json(
            session, "GET", SIGNER_PATH, params={"signer_uuid": signer_uuid}
        )
        return StatusResponse(
            status=data["status"], raw_response=data, elapsed_time=elapsed_time
        )

    async def get_signer(self, signer_uuid: str) -> StatusResponse:
        async with self._session() as session:
            return await self._get_signer_once(session, signer_uuid)

    async def wait_for_approval(
        self, signer_uuid: str, terminal_failure: FrozenSet[str] = frozenset()
    ) -> PollOutcome:
        """Poll the signer until it is approved or the poll policy gives up"""
        poller = StatusPoller(on_status_change=self.on_status_change)

        async with self._session() as session:

            async def fetch_status(resource_id: str) -> StatusResponse:
                return await self._get_signer_once(session, resource_id)

            request = PollRequest.from_config(
                signer_uuid,
                fetch_status,
                self.config,
                terminal_success=APPROVED,
                terminal_failure=terminal_failure,
            )
            return await poller.poll(request)
