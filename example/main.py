import asyncio
import time

from miniapp_poller.config import Settings
from miniapp_poller.deployment_client import DeploymentClient
from miniapp_poller.models import StatusPollingConfig
from miniapp_poller.signer_client import SignerClient
from status_server import StatusServer


async def status_changed(status_response):
    print(f"Status changed to: {status_response.status}")
    print(f"Elapsed time: {status_response.elapsed_time:.6f}s")


async def main():
    PORT = 8000
    server = StatusServer(approval_time=5.0, completion_time=12.0, error_rate=0.1)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    settings = Settings(
        neynar_api_key="NEYNAR_API_DOCS",
        neynar_api_url=f"http://localhost:{PORT}",
        vercel_token="local-token",
        vercel_api_url=f"http://localhost:{PORT}",
    )

    signers = SignerClient.from_settings(settings, on_status_change=status_changed)
    signer = await signers.create_signer()

    # A real app signs a SignedKeyRequest (EIP-712) with its custody account here
    deadline = int(time.time()) + 86400
    signer = await signers.register_signed_key(
        signer.signer_uuid, app_fid=977233, deadline=deadline, signature="0x" + "00" * 65
    )
    print(f"Approve the signer at: {signer.signer_approval_url}")

    outcome = await signers.wait_for_approval(signer.signer_uuid)
    print(f"Signer outcome: {outcome.kind.value} after {outcome.attempts} checks")

    deployments = DeploymentClient.from_settings(
        settings,
        config=StatusPollingConfig(interval=1.0, timeout=60.0, max_consecutive_errors=None),
        on_status_change=status_changed,
    )
    outcome = await deployments.wait_for_deployment("prj_example")
    if outcome.succeeded:
        print(f"Deployment live at https://{outcome.response.raw_response['url']}")
    else:
        print(f"Deployment did not become ready: {outcome.kind.value} ({outcome.error or outcome.status})")

    await asyncio.sleep(1)


if __name__ == "__main__":
    asyncio.run(main())
