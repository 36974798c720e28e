"""Proxmox VE user and resource pool provisioning.

Each lab gets a PVE-realm user ``lab-{id}@pve`` and a resource pool
``lab-{id}-pool`` on which the user is granted a role.
"""
from __future__ import annotations

import logging

import httpx
from pydantic import BaseModel

from labby.errors import ConfigurationError, ServiceError
from labby.schemas import Credential
from labby.services.base import CleanupContext, Service, ServiceType, SetupContext, StepStatus
from labby.services.http import new_client, request
from labby.utils import generate_password

logger = logging.getLogger(__name__)

USERNAME_KEY = "proxmox_user_username"
POOL_KEY = "proxmox_user_pool"
URI_KEY = "proxmox_user_uri"

STEP_CONNECT = "Connecting to Proxmox"
STEP_USER = "Creating User Account"
STEP_POOL = "Creating Resource Pool"
STEP_PASSWORD = "Setting Password"


class ProxmoxUserParams(BaseModel):
    uri: str
    admin_user: str
    admin_pass: str
    skip_tls_verify: bool = False
    realm: str = "pve"
    # Role granted on the lab's pool
    pool_role: str = "PVEAdmin"


def lab_username(lab_id: str, realm: str = "pve") -> str:
    return f"lab-{lab_id}@{realm}"


def lab_pool(lab_id: str) -> str:
    return f"lab-{lab_id}-pool"


class ProxmoxUserService(Service):
    """Creates a Proxmox VE user and resource pool per lab."""

    params_model = ProxmoxUserParams

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    @property
    def name(self) -> str:
        return ServiceType.PROXMOX_USER.value

    @property
    def description(self) -> str:
        return "Proxmox VE user account with a dedicated resource pool"

    @property
    def setup_steps(self) -> list[str]:
        return [STEP_CONNECT, STEP_USER, STEP_POOL, STEP_PASSWORD]

    def expected_identifiers(self, lab_id: str) -> dict[str, str]:
        return {USERNAME_KEY: lab_username(lab_id), POOL_KEY: lab_pool(lab_id)}

    def _client(self, params: ProxmoxUserParams, timeout: float | None) -> httpx.AsyncClient:
        return new_client(
            f"{params.uri.rstrip('/')}/api2/json",
            timeout=timeout,
            verify=not params.skip_tls_verify,
            transport=self._transport,
        )

    async def _login(self, client: httpx.AsyncClient, params: ProxmoxUserParams, lab_id: str) -> None:
        """Authenticate ``client`` with a ticket and CSRF token."""
        response = await request(
            client, "POST", "/access/ticket",
            service=self.name, lab_id=lab_id,
            data={"username": params.admin_user, "password": params.admin_pass},
        )
        data = response.json().get("data") or {}
        ticket = data.get("ticket")
        csrf = data.get("CSRFPreventionToken")
        if not ticket or not csrf:
            raise ServiceError("Proxmox login returned no ticket", self.name, lab_id)
        client.headers["Cookie"] = f"PVEAuthCookie={ticket}"
        client.headers["CSRFPreventionToken"] = csrf

    async def execute_setup(self, ctx: SetupContext) -> None:
        params: ProxmoxUserParams = ctx.params
        username = lab_username(ctx.lab_id, params.realm)
        pool = lab_pool(ctx.lab_id)

        async with self._client(params, ctx.timeout) as client:
            ctx.report(STEP_CONNECT, StepStatus.RUNNING, f"Connecting to {params.uri}")
            await self._login(client, params, ctx.lab_id)
            ctx.report(STEP_CONNECT, StepStatus.COMPLETED)

            # Recorded before creation so a failure part way is still cleaned up
            ctx.lab.service_data[URI_KEY] = params.uri
            ctx.lab.service_data[USERNAME_KEY] = username
            ctx.lab.service_data[POOL_KEY] = pool

            ctx.report(STEP_USER, StepStatus.RUNNING, f"Creating user {username}")
            await request(
                client, "POST", "/access/users",
                service=self.name, lab_id=ctx.lab_id,
                data={
                    "userid": username,
                    "comment": f"Lab {ctx.lab_name} (owner {ctx.owner_id})",
                    "expire": str(int(ctx.lab.ends_at.timestamp())),
                },
            )
            ctx.report(STEP_USER, StepStatus.COMPLETED)

            ctx.report(STEP_POOL, StepStatus.RUNNING, f"Creating pool {pool}")
            await request(
                client, "POST", "/pools",
                service=self.name, lab_id=ctx.lab_id,
                data={"poolid": pool, "comment": f"Resource pool for lab {ctx.lab_name}"},
            )
            await request(
                client, "PUT", "/access/acl",
                service=self.name, lab_id=ctx.lab_id,
                data={"path": f"/pool/{pool}", "users": username, "roles": params.pool_role},
            )
            ctx.report(STEP_POOL, StepStatus.COMPLETED)

            ctx.report(STEP_PASSWORD, StepStatus.RUNNING)
            password = generate_password()
            await request(
                client, "PUT", "/access/password",
                service=self.name, lab_id=ctx.lab_id,
                data={"userid": username, "password": password},
            )
            ctx.add_credential(Credential(
                lab_id=ctx.lab_id,
                label="Proxmox VE",
                username=username,
                password=password,
                url=params.uri,
                notes=f"Proxmox VE cluster management access. Resource pool: {pool}",
                expires_at=ctx.lab.ends_at,
            ))
            ctx.report(STEP_PASSWORD, StepStatus.COMPLETED)

        logger.info(f"Proxmox user {username} ready with pool {pool}")

    async def execute_cleanup(self, ctx: CleanupContext) -> None:
        if ctx.params is None:
            raise ConfigurationError("Proxmox cleanup requires connection parameters", ctx.lab_id)
        params: ProxmoxUserParams = ctx.params
        username = ctx.lab.service_data.get(USERNAME_KEY) or lab_username(ctx.lab_id, params.realm)
        pool = ctx.lab.service_data.get(POOL_KEY) or lab_pool(ctx.lab_id)

        failures: list[str] = []
        async with self._client(params, ctx.timeout) as client:
            await self._login(client, params, ctx.lab_id)
            for kind, path in (("pool", f"/pools/{pool}"), ("user", f"/access/users/{username}")):
                try:
                    response = await request(
                        client, "DELETE", path,
                        service=self.name, lab_id=ctx.lab_id, allow_missing=True,
                    )
                    if response is None:
                        logger.info(f"Proxmox {kind} {path} already absent")
                    else:
                        logger.info(f"Deleted Proxmox {kind} {path}")
                except ServiceError as e:
                    logger.warning(f"Failed to delete Proxmox {kind} {path}: {e}")
                    failures.append(f"{kind}: {e}")

        if failures:
            raise ServiceError(
                f"Proxmox cleanup incomplete for lab {ctx.lab_id}: {'; '.join(failures)}",
                self.name, ctx.lab_id,
            )
