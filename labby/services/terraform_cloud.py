"""Terraform Cloud workspace provisioning.

Each lab gets a workspace ``lab-{id}`` in the configured organization.
Config keys prefixed with ``var_`` become Terraform variables and keys
prefixed with ``env_`` become environment variables. Values may contain
``${lab_uuid}`` (replaced by the lab ID) and ``${unique_integer(a,b)}``
(replaced by a tag from the shared allocator, released on cleanup).
"""
from __future__ import annotations

import logging
import re

import httpx
from pydantic import BaseModel, ConfigDict

from labby.errors import ConfigurationError, ServiceError
from labby.schemas import Credential
from labby.services.allocator import TagAllocator
from labby.services.base import CleanupContext, Service, ServiceType, SetupContext, StepStatus
from labby.services.http import new_client, request

logger = logging.getLogger(__name__)

WORKSPACE_KEY = "terraform_cloud_workspace"
WORKSPACE_ID_KEY = "terraform_cloud_workspace_id"
RUN_ID_KEY = "terraform_cloud_run_id"
TAGS_KEY = "terraform_cloud_tags"

STEP_WORKSPACE = "Creating Workspace"
STEP_VARIABLES = "Setting Variables"
STEP_RUN = "Triggering Run"

_UNIQUE_INTEGER = re.compile(r"\$\{unique_integer\((\d+)\s*,\s*(\d+)\)\}")


class TerraformCloudParams(BaseModel):
    api_token: str
    organization: str
    host: str = "https://app.terraform.io"
    vcs_repo: str = ""
    oauth_token_id: str = ""
    working_directory: str = ""
    terraform_version: str = ""
    auto_apply: bool = True

    model_config = ConfigDict(extra="allow")

    def variables(self, prefix: str) -> dict[str, str]:
        extra = self.model_extra or {}
        return {
            key[len(prefix):]: str(value)
            for key, value in extra.items()
            if key.startswith(prefix) and len(key) > len(prefix)
        }


class TerraformCloudService(Service):
    """Creates a Terraform Cloud workspace per lab and queues a run."""

    params_model = TerraformCloudParams

    def __init__(self, allocator: TagAllocator, transport: httpx.AsyncBaseTransport | None = None):
        self.allocator = allocator
        self._transport = transport

    @property
    def name(self) -> str:
        return ServiceType.TERRAFORM_CLOUD.value

    @property
    def description(self) -> str:
        return "Terraform Cloud workspace running the lab's infrastructure code"

    @property
    def setup_steps(self) -> list[str]:
        return [STEP_WORKSPACE, STEP_VARIABLES, STEP_RUN]

    def expected_identifiers(self, lab_id: str) -> dict[str, str]:
        return {WORKSPACE_KEY: f"lab-{lab_id}"}

    def _client(self, params: TerraformCloudParams, timeout: float | None) -> httpx.AsyncClient:
        return new_client(
            params.host,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {params.api_token}",
                "Content-Type": "application/vnd.api+json",
            },
            transport=self._transport,
        )

    def render_value(self, value: str, lab_id: str, allocated: list[int]) -> str:
        """Expand ``${lab_uuid}`` and ``${unique_integer(a,b)}`` placeholders."""
        def allocate(match: re.Match) -> str:
            tag = self.allocator.allocate(int(match.group(1)), int(match.group(2)), owner=lab_id)
            allocated.append(tag)
            return str(tag)

        value = value.replace("${lab_uuid}", lab_id)
        return _UNIQUE_INTEGER.sub(allocate, value)

    async def execute_setup(self, ctx: SetupContext) -> None:
        params: TerraformCloudParams = ctx.params
        workspace = f"lab-{ctx.lab_id}"
        allocated: list[int] = []

        async with self._client(params, ctx.timeout) as client:
            ctx.report(STEP_WORKSPACE, StepStatus.RUNNING, f"Creating workspace {workspace}")
            ctx.lab.service_data[WORKSPACE_KEY] = workspace
            attributes: dict = {
                "name": workspace,
                "auto-apply": params.auto_apply,
                "description": f"Lab {ctx.lab_name} (owner {ctx.owner_id})",
            }
            if params.working_directory:
                attributes["working-directory"] = params.working_directory
            if params.terraform_version:
                attributes["terraform-version"] = params.terraform_version
            if params.vcs_repo:
                attributes["vcs-repo"] = {
                    "identifier": params.vcs_repo,
                    "oauth-token-id": params.oauth_token_id,
                }
            response = await request(
                client, "POST", f"/api/v2/organizations/{params.organization}/workspaces",
                service=self.name, lab_id=ctx.lab_id,
                json={"data": {"type": "workspaces", "attributes": attributes}},
            )
            workspace_id = response.json()["data"]["id"]
            ctx.lab.service_data[WORKSPACE_ID_KEY] = workspace_id
            ctx.report(STEP_WORKSPACE, StepStatus.COMPLETED)

            ctx.report(STEP_VARIABLES, StepStatus.RUNNING)
            try:
                for category, prefix in (("terraform", "var_"), ("env", "env_")):
                    for key, raw in params.variables(prefix).items():
                        value = self.render_value(raw, ctx.lab_id, allocated)
                        await request(
                            client, "POST", f"/api/v2/workspaces/{workspace_id}/vars",
                            service=self.name, lab_id=ctx.lab_id,
                            json={"data": {"type": "vars", "attributes": {
                                "key": key,
                                "value": value,
                                "category": category,
                                "hcl": False,
                                "sensitive": False,
                            }}},
                        )
            finally:
                if allocated:
                    ctx.lab.service_data[TAGS_KEY] = ",".join(str(tag) for tag in allocated)
            ctx.report(STEP_VARIABLES, StepStatus.COMPLETED)

            ctx.report(STEP_RUN, StepStatus.RUNNING)
            response = await request(
                client, "POST", "/api/v2/runs",
                service=self.name, lab_id=ctx.lab_id,
                json={"data": {
                    "type": "runs",
                    "attributes": {"message": f"Provision lab {ctx.lab_name}"},
                    "relationships": {
                        "workspace": {"data": {"type": "workspaces", "id": workspace_id}},
                    },
                }},
            )
            run_id = response.json()["data"]["id"]
            ctx.lab.service_data[RUN_ID_KEY] = run_id
            ctx.report(STEP_RUN, StepStatus.COMPLETED, f"Run {run_id} queued")

        url = f"{params.host.rstrip('/')}/app/{params.organization}/workspaces/{workspace}"
        ctx.add_credential(Credential(
            lab_id=ctx.lab_id,
            label="Terraform Cloud Workspace",
            username=workspace,
            password="",
            url=url,
            notes=f"Run {run_id} queued",
            expires_at=ctx.lab.ends_at,
        ))
        logger.info(f"Terraform Cloud workspace {workspace} created, run {run_id} queued")

    async def execute_cleanup(self, ctx: CleanupContext) -> None:
        if ctx.params is None:
            raise ConfigurationError("Terraform Cloud cleanup requires connection parameters", ctx.lab_id)
        params: TerraformCloudParams = ctx.params
        workspace = ctx.lab.service_data.get(WORKSPACE_KEY) or f"lab-{ctx.lab_id}"

        async with self._client(params, ctx.timeout) as client:
            response = await request(
                client, "DELETE", f"/api/v2/organizations/{params.organization}/workspaces/{workspace}",
                service=self.name, lab_id=ctx.lab_id, allow_missing=True,
            )
        if response is None:
            logger.info(f"Terraform Cloud workspace {workspace} already absent")
        else:
            logger.info(f"Deleted Terraform Cloud workspace {workspace}")

        for tag in _recorded_tags(ctx.lab.service_data.get(TAGS_KEY, "")):
            self.allocator.release(tag)
        self.allocator.release_owner(ctx.lab_id)


def _recorded_tags(value: str) -> list[int]:
    tags = []
    for part in value.split(","):
        part = part.strip()
        if part.isdigit():
            tags.append(int(part))
    return tags


def tags_in_use(labs) -> list[tuple[int, str]]:
    """(tag, lab ID) pairs recorded in the service data of ``labs``."""
    return [
        (tag, lab.id)
        for lab in labs
        for tag in _recorded_tags(lab.service_data.get(TAGS_KEY, ""))
    ]
