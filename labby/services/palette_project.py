"""Palette (Spectro Cloud) project provisioning.

Per lab: a project ``lab-{id}``, a user ``lab+{id}@{domain}`` holding the
project role, an API key ``lab-{id}-api-key`` and an edge registration
token scoped to the project. UIDs are recorded in service data; cleanup
falls back to looking objects up by name when they are missing.
"""
from __future__ import annotations

import logging
from datetime import timedelta

import httpx
from pydantic import BaseModel

from labby.errors import ConfigurationError, ServiceError
from labby.schemas import Credential
from labby.services.base import CleanupContext, Service, ServiceType, SetupContext, StepStatus
from labby.services.http import new_client, request
from labby.utils import generate_password

logger = logging.getLogger(__name__)

PROJECT_NAME_KEY = "palette_project_name"
PROJECT_UID_KEY = "palette_project_uid"
USER_EMAIL_KEY = "palette_project_user_email"
USER_UID_KEY = "palette_project_user_uid"
API_KEY_NAME_KEY = "palette_project_api_key_name"
API_KEY_UID_KEY = "palette_project_api_key_uid"
EDGE_TOKEN_NAME_KEY = "palette_project_edge_token_name"
EDGE_TOKEN_UID_KEY = "palette_project_edge_token_uid"

STEP_PROJECT = "Creating Project"
STEP_USER = "Setting up User Account"
STEP_ACCESS = "Configuring Access Permissions"
STEP_API_KEY = "Generating API Keys"
STEP_EDGE_TOKEN = "Creating Edge Tokens"


class PaletteProjectParams(BaseModel):
    host: str
    api_key: str
    project_role: str = "Project Admin"
    user_email_domain: str = "spectrocloud.com"
    # API keys outlive the lab by this many hours so owners can finish work
    api_key_grace_hours: int = 0


def identifiers(lab_id: str, domain: str = "spectrocloud.com") -> dict[str, str]:
    return {
        PROJECT_NAME_KEY: f"lab-{lab_id}",
        USER_EMAIL_KEY: f"lab+{lab_id}@{domain}",
        API_KEY_NAME_KEY: f"lab-{lab_id}-api-key",
        EDGE_TOKEN_NAME_KEY: f"lab-{lab_id}-edge-token",
    }


class PaletteProjectService(Service):
    """Creates a Palette project with its own user, API key and edge token."""

    params_model = PaletteProjectParams

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    @property
    def name(self) -> str:
        return ServiceType.PALETTE_PROJECT.value

    @property
    def description(self) -> str:
        return "Palette project with a dedicated project admin user"

    @property
    def setup_steps(self) -> list[str]:
        return [STEP_PROJECT, STEP_USER, STEP_ACCESS, STEP_API_KEY, STEP_EDGE_TOKEN]

    def expected_identifiers(self, lab_id: str) -> dict[str, str]:
        return identifiers(lab_id)

    def _client(self, params: PaletteProjectParams, timeout: float | None) -> httpx.AsyncClient:
        return new_client(
            params.host,
            timeout=timeout,
            headers={"ApiKey": params.api_key, "Content-Type": "application/json"},
            transport=self._transport,
        )

    async def _find_uid(self, client: httpx.AsyncClient, path: str, match, lab_id: str) -> str | None:
        """Return the UID of the first item under ``path`` accepted by ``match``."""
        response = await request(client, "GET", path, service=self.name, lab_id=lab_id, allow_missing=True)
        if response is None:
            return None
        for item in response.json().get("items") or []:
            if match(item):
                return (item.get("metadata") or {}).get("uid")
        return None

    async def execute_setup(self, ctx: SetupContext) -> None:
        params: PaletteProjectParams = ctx.params
        names = identifiers(ctx.lab_id, params.user_email_domain)
        data = ctx.lab.service_data
        data.update(names)

        async with self._client(params, ctx.timeout) as client:
            ctx.report(STEP_PROJECT, StepStatus.RUNNING, f"Creating project {names[PROJECT_NAME_KEY]}")
            response = await request(
                client, "POST", "/v1/projects",
                service=self.name, lab_id=ctx.lab_id,
                json={
                    "metadata": {"name": names[PROJECT_NAME_KEY]},
                    "spec": {"description": f"Lab {ctx.lab_name}"},
                },
            )
            project_uid = response.json()["uid"]
            data[PROJECT_UID_KEY] = project_uid
            ctx.report(STEP_PROJECT, StepStatus.COMPLETED)

            ctx.report(STEP_USER, StepStatus.RUNNING, f"Creating user {names[USER_EMAIL_KEY]}")
            response = await request(
                client, "POST", "/v1/users",
                service=self.name, lab_id=ctx.lab_id,
                json={"spec": {
                    "emailId": names[USER_EMAIL_KEY],
                    "firstName": "Lab",
                    "lastName": "User",
                }},
            )
            user_uid = response.json()["uid"]
            data[USER_UID_KEY] = user_uid

            ctx.report(STEP_ACCESS, StepStatus.RUNNING)
            role_uid = await self._find_uid(
                client, "/v1/roles",
                lambda item: (item.get("metadata") or {}).get("name") == params.project_role,
                ctx.lab_id,
            )
            if role_uid is None:
                raise ServiceError(f"Palette role {params.project_role!r} not found", self.name, ctx.lab_id)
            await request(
                client, "PUT", f"/v1/users/{user_uid}/projects",
                service=self.name, lab_id=ctx.lab_id,
                json={"projects": [{"projectUid": project_uid, "roles": [role_uid]}]},
            )
            ctx.report(STEP_ACCESS, StepStatus.COMPLETED)

            password = generate_password()
            await self._activate_password(client, user_uid, password, ctx.lab_id)
            ctx.report(STEP_USER, StepStatus.COMPLETED)

            ctx.report(STEP_API_KEY, StepStatus.RUNNING)
            expiry = ctx.lab.ends_at + timedelta(hours=params.api_key_grace_hours)
            response = await request(
                client, "POST", "/v1/apiKeys",
                service=self.name, lab_id=ctx.lab_id,
                json={
                    "metadata": {
                        "name": names[API_KEY_NAME_KEY],
                        "annotations": {"description": "Autogenerated Lab API Key"},
                    },
                    "spec": {"userUid": user_uid, "expiry": expiry.isoformat()},
                },
            )
            body = response.json()
            data[API_KEY_UID_KEY] = body.get("uid", "")
            api_key_value = body.get("apiKey", "")
            ctx.report(STEP_API_KEY, StepStatus.COMPLETED)

            ctx.report(STEP_EDGE_TOKEN, StepStatus.RUNNING)
            response = await request(
                client, "POST", "/v1/edgehosts/tokens",
                service=self.name, lab_id=ctx.lab_id,
                json={
                    "metadata": {"name": names[EDGE_TOKEN_NAME_KEY]},
                    "spec": {"defaultProjectUid": project_uid, "expiry": ctx.lab.ends_at.isoformat()},
                },
            )
            token_uid = response.json()["uid"]
            data[EDGE_TOKEN_UID_KEY] = token_uid
            response = await request(
                client, "GET", f"/v1/edgehosts/tokens/{token_uid}",
                service=self.name, lab_id=ctx.lab_id,
            )
            edge_token = (response.json().get("spec") or {}).get("token", "")
            ctx.report(STEP_EDGE_TOKEN, StepStatus.COMPLETED)

        login_url = f"{params.host.rstrip('/')}/login"
        ctx.add_credential(Credential(
            lab_id=ctx.lab_id,
            label="Palette Console",
            username=names[USER_EMAIL_KEY],
            password=password,
            url=login_url,
            notes=f"Project: {names[PROJECT_NAME_KEY]}",
            expires_at=ctx.lab.ends_at,
        ))
        ctx.add_credential(Credential(
            lab_id=ctx.lab_id,
            label="Palette API Key",
            username=names[API_KEY_NAME_KEY],
            password=api_key_value,
            url=login_url,
            expires_at=expiry,
        ))
        ctx.add_credential(Credential(
            lab_id=ctx.lab_id,
            label="Palette Edge Registration Token",
            username=names[EDGE_TOKEN_NAME_KEY],
            password=edge_token,
            notes=f"Registers edge hosts into project {names[PROJECT_NAME_KEY]}",
            expires_at=ctx.lab.ends_at,
        ))
        logger.info(f"Palette project {names[PROJECT_NAME_KEY]} ready")

    async def _activate_password(self, client: httpx.AsyncClient, user_uid: str, password: str, lab_id: str) -> None:
        """Set the new user's password through its activation link token."""
        response = await request(client, "GET", f"/v1/users/{user_uid}", service=self.name, lab_id=lab_id)
        link = (response.json().get("status") or {}).get("activationLink") or ""
        parts = link.split("/")
        if len(parts) <= 5 or not parts[5]:
            raise ServiceError("Palette user has no activation token", self.name, lab_id)
        await request(
            client, "PATCH", f"/v1/auth/password/{parts[5]}/activate",
            service=self.name, lab_id=lab_id,
            json={"password": password},
        )

    async def execute_cleanup(self, ctx: CleanupContext) -> None:
        if ctx.params is None:
            raise ConfigurationError("Palette cleanup requires connection parameters", ctx.lab_id)
        params: PaletteProjectParams = ctx.params
        data = {**identifiers(ctx.lab_id, params.user_email_domain), **ctx.lab.service_data}

        failures: list[str] = []
        async with self._client(params, ctx.timeout) as client:
            lookups = (
                (EDGE_TOKEN_UID_KEY, "/v1/edgehosts/tokens", "edge token",
                 lambda item: (item.get("metadata") or {}).get("name") == data[EDGE_TOKEN_NAME_KEY]),
                (API_KEY_UID_KEY, "/v1/apiKeys", "API key",
                 lambda item: (item.get("metadata") or {}).get("name") == data[API_KEY_NAME_KEY]),
                (USER_UID_KEY, "/v1/users", "user",
                 lambda item: (item.get("spec") or {}).get("emailId") == data[USER_EMAIL_KEY]),
                (PROJECT_UID_KEY, "/v1/projects", "project",
                 lambda item: (item.get("metadata") or {}).get("name") == data[PROJECT_NAME_KEY]),
            )
            for uid_key, path, kind, match in lookups:
                try:
                    uid = data.get(uid_key) or await self._find_uid(client, path, match, ctx.lab_id)
                    if not uid:
                        logger.info(f"Palette {kind} for lab {ctx.lab_id} not found, nothing to delete")
                        continue
                    response = await request(
                        client, "DELETE", f"{path}/{uid}",
                        service=self.name, lab_id=ctx.lab_id, allow_missing=True,
                    )
                    if response is not None:
                        logger.info(f"Deleted Palette {kind} {uid}")
                except ServiceError as e:
                    logger.warning(f"Failed to delete Palette {kind}: {e}")
                    failures.append(f"{kind}: {e}")

        if failures:
            raise ServiceError(
                f"Palette cleanup incomplete for lab {ctx.lab_id}: {'; '.join(failures)}",
                self.name, ctx.lab_id,
            )
