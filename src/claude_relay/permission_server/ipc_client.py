"""Client side of the permission bridge, used by the approver subprocess."""

import logging

import httpx
from pydantic import ValidationError

from ..models.permissions import (
    IPC_FAILED_MESSAGE,
    PermissionDecision,
    PermissionRequest,
)
from .ipc_server import PERMISSION_PATH

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_TIMEOUT = 360.0


def permission_url(host: str, port: int) -> str:
    """URL of the IPC server's permission endpoint.

    Examples:
        >>> permission_url("::1", 9824)
        'http://[::1]:9824/permission'
    """
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"http://{host}:{port}{PERMISSION_PATH}"


async def forward_permission_request(
    port: int,
    request: PermissionRequest,
    timeout: float = DEFAULT_CLIENT_TIMEOUT,
    host: str = "127.0.0.1",
) -> PermissionDecision:
    """Send a permission request to the relay and wait for its decision.

    Never raises. Any transport failure, timeout or unreadable reply becomes
    a deny so the CLI never runs a tool without an explicit allow.

    Args:
        port: IPC server port in the relay process
        request: Request to forward
        timeout: Upper bound in seconds for the whole exchange; must exceed
            the relay's own decision timeout so the relay answers first
        host: Loopback host of the IPC server

    Returns:
        The relay's decision, or a deny on failure
    """
    url = permission_url(host, port)
    logger.info(f"[IpcClient] Forwarding {request.tool_name} ({request.request_id}) to {url}")

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(url, json=request.to_wire())
            response.raise_for_status()
            decision = PermissionDecision.model_validate(response.json())
    except httpx.TimeoutException:
        logger.error(f"[IpcClient] Timeout ({timeout}s) waiting for decision on {request.request_id}")
        return PermissionDecision.deny(IPC_FAILED_MESSAGE)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.error(f"[IpcClient] Request failed: {e!r}")
        return PermissionDecision.deny(IPC_FAILED_MESSAGE)
    except (ValueError, ValidationError) as e:
        logger.error(f"[IpcClient] Invalid response: {e}")
        return PermissionDecision.deny(IPC_FAILED_MESSAGE)

    logger.info(f"[IpcClient] Decision for {request.request_id}: {decision.behavior.value}")
    return decision
