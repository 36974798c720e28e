"""Palette (Spectro Cloud) tenant provisioning.

Each lab gets a whole tenant ``lab-{id}`` created with system admin
credentials. The tenant admin ``lab-admin-{id}@{domain}`` is activated
with a generated password and handed to the lab owner.
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

TENANT_NAME_KEY = "palette_tenant_name"
TENANT_UID_KEY = "palette_tenant_id"
ADMIN_EMAIL_KEY = "palette_tenant_admin_email"
HOST_KEY = "palette_tenant_host"

STEP_CONNECT = "Connecting to Palette"
STEP_ACCOUNT = "Creating User Account"
STEP_PASSWORD = "Setting Password"

PASSWORD_PREFIX = "L3@rN-"


class PaletteTenantParams(BaseModel):
    host: str
    system_username: str
    system_password: str
    admin_email_domain: str = "spectrocloud.com"


def identifiers(lab_id: str, domain: str = "spectrocloud.com") -> dict[str, str]:
    return {
        TENANT_NAME_KEY: f"lab-{lab_id}",
        ADMIN_EMAIL_KEY: f"lab-admin-{lab_id}@{domain}",
    }


class PaletteTenantService(Service):
    """Creates a dedicated Palette tenant per lab."""

    params_model = PaletteTenantParams

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    @property
    def name(self) -> str:
        return ServiceType.PALETTE_TENANT.value

    @property
    def description(self) -> str:
        return "Palette tenant with its own tenant admin account"

    @property
    def setup_steps(self) -> list[str]:
        return [STEP_CONNECT, STEP_ACCOUNT, STEP_PASSWORD]

    def expected_identifiers(self, lab_id: str) -> dict[str, str]:
        return identifiers(lab_id)

    def _client(self, params: PaletteTenantParams, timeout: float | None) -> httpx.AsyncClient:
        return new_client(
            params.host,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=self._transport,
        )

    async def _login(self, client: httpx.AsyncClient, params: PaletteTenantParams, lab_id: str) -> None:
        """Authenticate ``client`` as the system admin."""
        response = await request(
            client, "POST", "/v1/auth/syslogin",
            service=self.name, lab_id=lab_id,
            json={"username": params.system_username, "password": params.system_password},
        )
        token = response.json().get("Authorization")
        if not token:
            raise ServiceError("Palette system login returned no token", self.name, lab_id)
        client.headers["Authorization"] = token

    async def execute_setup(self, ctx: SetupContext) -> None:
        params: PaletteTenantParams = ctx.params
        names = identifiers(ctx.lab_id, params.admin_email_domain)
        data = ctx.lab.service_data
        data.update(names)
        data[HOST_KEY] = params.host

        async with self._client(params, ctx.timeout) as client:
            ctx.report(STEP_CONNECT, StepStatus.RUNNING, f"Connecting to {params.host}")
            await self._login(client, params, ctx.lab_id)
            ctx.report(STEP_CONNECT, StepStatus.COMPLETED)

            ctx.report(STEP_ACCOUNT, StepStatus.RUNNING, f"Creating tenant {names[TENANT_NAME_KEY]}")
            response = await request(
                client, "POST", "/v1/tenants",
                service=self.name, lab_id=ctx.lab_id,
                json={
                    "metadata": {"name": names[TENANT_NAME_KEY]},
                    "spec": {
                        "orgName": names[TENANT_NAME_KEY],
                        "firstName": "Lab",
                        "lastName": "Admin",
                        "emailId": names[ADMIN_EMAIL_KEY],
                        "authType": "password",
                    },
                },
            )
            tenant_uid = response.json().get("uid")
            if not tenant_uid:
                raise ServiceError("Palette returned no tenant UID", self.name, ctx.lab_id)
            data[TENANT_UID_KEY] = tenant_uid

            ctx.report(STEP_PASSWORD, StepStatus.RUNNING)
            response = await request(
                client, "GET", f"/v1/tenants/{tenant_uid}/users/admin/passwordToken",
                service=self.name, lab_id=ctx.lab_id,
            )
            password_token = response.json().get("passwordToken")
            if not password_token:
                raise ServiceError("Palette tenant admin has no password token", self.name, ctx.lab_id)
            password = PASSWORD_PREFIX + generate_password()
            await request(
                client, "PATCH", f"/v1/auth/password/{password_token}/activate",
                service=self.name, lab_id=ctx.lab_id,
                json={"password": password},
            )

        ctx.add_credential(Credential(
            lab_id=ctx.lab_id,
            label="Palette Tenant",
            username=names[ADMIN_EMAIL_KEY],
            password=password,
            url=params.host,
            notes=f"Tenant: {names[TENANT_NAME_KEY]}",
            expires_at=ctx.lab.ends_at,
        ))
        ctx.report(STEP_ACCOUNT, StepStatus.COMPLETED)
        ctx.report(STEP_PASSWORD, StepStatus.COMPLETED)
        logger.info(f"Palette tenant {names[TENANT_NAME_KEY]} ready ({tenant_uid})")

    async def _find_tenant(self, client: httpx.AsyncClient, tenant_name: str, lab_id: str) -> str | None:
        response = await request(
            client, "GET", "/v1/tenants",
            service=self.name, lab_id=lab_id, allow_missing=True,
        )
        if response is None:
            return None
        for item in response.json().get("items") or []:
            metadata = item.get("metadata") or {}
            if metadata.get("name") == tenant_name:
                return metadata.get("uid")
        return None

    async def execute_cleanup(self, ctx: CleanupContext) -> None:
        if ctx.params is None:
            raise ConfigurationError("Palette tenant cleanup requires system credentials", ctx.lab_id)
        params: PaletteTenantParams = ctx.params
        data = {**identifiers(ctx.lab_id, params.admin_email_domain), **ctx.lab.service_data}

        async with self._client(params, ctx.timeout) as client:
            await self._login(client, params, ctx.lab_id)

            tenant_uid = data.get(TENANT_UID_KEY) or await self._find_tenant(
                client, data[TENANT_NAME_KEY], ctx.lab_id,
            )
            if not tenant_uid:
                logger.info(f"Palette tenant for lab {ctx.lab_id} not found, nothing to delete")
                return

            response = await request(
                client, "DELETE", f"/v1/tenants/{tenant_uid}",
                service=self.name, lab_id=ctx.lab_id, allow_missing=True,
            )
            if response is None:
                logger.info(f"Palette tenant {tenant_uid} already deleted")
            else:
                logger.info(f"Deleted Palette tenant {tenant_uid}")
