import random
import uuid
from datetime import datetime

from aiohttp import web
from loguru import logger


class StatusServer:
    """Local stand-in for the Neynar signer and Vercel deployment endpoints."""

    def __init__(
        self,
        approval_time: float = 3.0,
        completion_time: float = 10.0,
        final_state: str = "READY",
        listing_delay: float = 0.0,
        error_rate: float = 0.1,
        rate_limited: bool = False,
    ):
        self.approval_time = approval_time
        self.completion_time = completion_time
        self.final_state = final_state
        self.listing_delay = listing_delay
        self.error_rate = error_rate
        self.rate_limited = rate_limited
        self.signers = {}
        self.registrations = {}
        self.revoked = set()
        self.deployment_started = None
        self.request_count = 0
        self.runner = None
        self.app = web.Application()
        self.app.router.add_post("/v2/farcaster/signer", self.handle_create_signer)
        self.app.router.add_post(
            "/v2/farcaster/signer/signed_key", self.handle_register_signed_key
        )
        self.app.router.add_get("/v2/farcaster/signer", self.handle_signer)
        self.app.router.add_get("/v6/deployments", self.handle_deployments)
        self.logger = logger

    def _refuse(self):
        """Returns an error response when the server is set up to misbehave"""
        if self.rate_limited:
            self.logger.info("Returning 429")
            return web.json_response(
                {"error": "rate limited"}, status=429, headers={"Retry-After": "60"}
            )
        if random.random() < self.error_rate:
            self.logger.info("Returning 500")
            return web.json_response({"error": "internal error"}, status=500)
        return None

    async def handle_create_signer(self, request):
        signer_uuid = str(uuid.uuid4())
        # Approval can only start once a signed key request is registered
        self.signers[signer_uuid] = None
        self.logger.info(f"Created signer {signer_uuid}")
        return web.json_response(
            {
                "signer_uuid": signer_uuid,
                "public_key": "0x" + uuid.uuid4().hex,
                "status": "generated",
            }
        )

    async def handle_register_signed_key(self, request):
        body = await request.json()
        for field in ("signer_uuid", "app_fid", "deadline", "signature"):
            if not body.get(field):
                return web.json_response({"message": f"{field} is required"}, status=400)

        signer_uuid = body["signer_uuid"]
        if signer_uuid not in self.signers:
            return web.json_response({"message": "Signer not found"}, status=404)

        self.signers[signer_uuid] = datetime.now()
        self.registrations[signer_uuid] = body
        self.logger.info(f"Registered signed key for {signer_uuid}")
        return web.json_response(
            {
                "signer_uuid": signer_uuid,
                "status": "pending_approval",
                "signer_approval_url": f"https://client.farcaster.xyz/deeplinks/signed-key-request?token={signer_uuid}",
            }
        )

    async def handle_signer(self, request):
        self.request_count += 1
        refused = self._refuse()
        if refused is not None:
            return refused

        signer_uuid = request.query.get("signer_uuid")
        if signer_uuid not in self.signers:
            return web.json_response({"message": "Signer not found"}, status=404)

        if signer_uuid in self.revoked:
            return web.json_response({"signer_uuid": signer_uuid, "status": "revoked"})

        registered_at = self.signers[signer_uuid]
        if registered_at is None:
            return web.json_response({"signer_uuid": signer_uuid, "status": "generated"})

        elapsed = (datetime.now() - registered_at).total_seconds()
        if elapsed >= self.approval_time:
            self.logger.info(f"Signer {signer_uuid} approved")
            return web.json_response(
                {"signer_uuid": signer_uuid, "status": "approved", "fid": 1234}
            )
        self.logger.info(f"Signer {signer_uuid} pending (elapsed: {elapsed:.1f}s)")
        return web.json_response({"signer_uuid": signer_uuid, "status": "pending_approval"})

    async def handle_deployments(self, request):
        self.request_count += 1
        refused = self._refuse()
        if refused is not None:
            return refused

        if self.deployment_started is None:
            self.deployment_started = datetime.now()
        elapsed = (datetime.now() - self.deployment_started).total_seconds()

        if elapsed < self.listing_delay:
            return web.json_response({"deployments": []})

        if elapsed >= self.completion_time:
            state = self.final_state
        elif elapsed >= self.completion_time / 2:
            state = "BUILDING"
        else:
            state = "QUEUED"

        self.logger.info(f"Returning deployment state {state} (elapsed: {elapsed:.1f}s)")
        project_id = request.query.get("projectId", "prj_local")
        return web.json_response(
            {
                "deployments": [
                    {
                        "uid": f"dpl_{project_id}",
                        "state": state,
                        "url": f"{project_id}.vercel.app",
                    }
                ]
            }
        )

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
            self.logger.info("Server stopped")
