"""Apache Guacamole remote-desktop account provisioning."""
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

USERNAME_KEY = "guacamole_username"
HOST_KEY = "guacamole_host"

STEP_CONNECT = "Connecting to Guacamole"
STEP_USER = "Creating User Account"


class GuacamoleParams(BaseModel):
    host: str
    admin_username: str
    admin_password: str
    data_source: str = "mysql"
    skip_tls_verify: bool = False


class GuacamoleService(Service):
    """Creates a Guacamole user per lab."""

    params_model = GuacamoleParams

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    @property
    def name(self) -> str:
        return ServiceType.GUACAMOLE.value

    @property
    def description(self) -> str:
        return "Remote desktop gateway account"

    @property
    def setup_steps(self) -> list[str]:
        return [STEP_CONNECT, STEP_USER]

    def expected_identifiers(self, lab_id: str) -> dict[str, str]:
        return {USERNAME_KEY: f"lab-{lab_id}"}

    def _client(self, params: GuacamoleParams, timeout: float | None) -> httpx.AsyncClient:
        return new_client(
            f"{params.host.rstrip('/')}/guacamole/api",
            timeout=timeout,
            verify=not params.skip_tls_verify,
            transport=self._transport,
        )

    async def _login(self, client: httpx.AsyncClient, params: GuacamoleParams, lab_id: str) -> str:
        """Authenticate ``client``; returns the data source to manage users in."""
        response = await request(
            client, "POST", "/tokens",
            service=self.name, lab_id=lab_id,
            data={"username": params.admin_username, "password": params.admin_password},
        )
        body = response.json()
        token = body.get("authToken")
        if not token:
            raise ServiceError("Guacamole login returned no token", self.name, lab_id)
        client.headers["Guacamole-Token"] = token
        return body.get("dataSource") or params.data_source

    async def execute_setup(self, ctx: SetupContext) -> None:
        params: GuacamoleParams = ctx.params
        username = f"lab-{ctx.lab_id}"

        async with self._client(params, ctx.timeout) as client:
            ctx.report(STEP_CONNECT, StepStatus.RUNNING, f"Connecting to {params.host}")
            data_source = await self._login(client, params, ctx.lab_id)
            ctx.report(STEP_CONNECT, StepStatus.COMPLETED)

            ctx.lab.service_data[HOST_KEY] = params.host
            ctx.lab.service_data[USERNAME_KEY] = username

            ctx.report(STEP_USER, StepStatus.RUNNING, f"Creating user {username}")
            password = generate_password()
            await request(
                client, "POST", f"/session/data/{data_source}/users",
                service=self.name, lab_id=ctx.lab_id,
                json={
                    "username": username,
                    "password": password,
                    "attributes": {
                        "disabled": "",
                        "expired": "",
                        "valid-until": ctx.lab.ends_at.strftime("%Y-%m-%d"),
                        "guac-full-name": ctx.lab_name,
                    },
                },
            )
            ctx.add_credential(Credential(
                lab_id=ctx.lab_id,
                label="Guacamole",
                username=username,
                password=password,
                url=f"{params.host.rstrip('/')}/guacamole/",
                notes="Browser-based remote desktop access",
                expires_at=ctx.lab.ends_at,
            ))
            ctx.report(STEP_USER, StepStatus.COMPLETED)

        logger.info(f"Guacamole user {username} created")

    async def execute_cleanup(self, ctx: CleanupContext) -> None:
        if ctx.params is None:
            raise ConfigurationError("Guacamole cleanup requires connection parameters", ctx.lab_id)
        params: GuacamoleParams = ctx.params
        username = ctx.lab.service_data.get(USERNAME_KEY) or f"lab-{ctx.lab_id}"

        async with self._client(params, ctx.timeout) as client:
            data_source = await self._login(client, params, ctx.lab_id)
            response = await request(
                client, "DELETE", f"/session/data/{data_source}/users/{username}",
                service=self.name, lab_id=ctx.lab_id, allow_missing=True,
            )
        if response is None:
            logger.info(f"Guacamole user {username} already absent")
        else:
            logger.info(f"Deleted Guacamole user {username}")
