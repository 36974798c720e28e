"""Tests for the Palette tenant service against a mocked API."""
from __future__ import annotations

import json
from datetime import timedelta

import httpx
import pytest

from labby.errors import ConfigurationError, ServiceError
from labby.schemas import Lab, LabStatus
from labby.services.base import CleanupContext, SetupContext
from labby.services.palette_tenant import PaletteTenantParams, PaletteTenantService
from labby.utils import utcnow

PARAMS = PaletteTenantParams(host="https://palette.example.com", system_username="admin", system_password="sys-pw")


def _lab() -> Lab:
    now = utcnow()
    return Lab(
        id="abc123", name="Demo", status=LabStatus.PROVISIONING, owner_id="owner-1",
        started_at=now, ends_at=now + timedelta(hours=2),
    )


class FakePaletteSystem:
    """Palette system API double."""

    def __init__(self):
        self.requests: list[tuple[str, str, dict | None]] = []
        self.token = "sys-token"
        self.password_token = "pw-token"
        self.tenants: list[dict] = []
        self.deleted: set[str] = set()

    def __call__(self, req: httpx.Request) -> httpx.Response:
        body = json.loads(req.content) if req.content else None
        path = req.url.path
        self.requests.append((req.method, path, body))

        if (req.method, path) == ("POST", "/v1/auth/syslogin"):
            if body != {"username": "admin", "password": "sys-pw"}:
                return httpx.Response(401)
            return httpx.Response(200, json={"Authorization": self.token})
        if req.headers.get("Authorization") != self.token:
            return httpx.Response(401)

        if (req.method, path) == ("POST", "/v1/tenants"):
            return httpx.Response(200, json={"uid": "tenant-1"})
        if (req.method, path) == ("GET", "/v1/tenants"):
            return httpx.Response(200, json={"items": self.tenants})
        if (req.method, path) == ("GET", "/v1/tenants/tenant-1/users/admin/passwordToken"):
            return httpx.Response(200, json={"passwordToken": self.password_token})
        if req.method == "PATCH" and path == f"/v1/auth/password/{self.password_token}/activate":
            return httpx.Response(204)
        if req.method == "DELETE" and path.startswith("/v1/tenants/"):
            uid = path.rsplit("/", 1)[-1]
            if uid in self.deleted:
                return httpx.Response(404)
            self.deleted.add(uid)
            return httpx.Response(204)
        return httpx.Response(404)

    def find(self, method: str, path: str) -> dict | None:
        for m, p, body in self.requests:
            if m == method and p == path:
                return body
        return None


@pytest.fixture
def api() -> FakePaletteSystem:
    return FakePaletteSystem()


@pytest.fixture
def service(api) -> PaletteTenantService:
    return PaletteTenantService(transport=httpx.MockTransport(api))


class TestSetup:
    """Tests for PaletteTenantService.execute_setup."""

    @pytest.mark.asyncio
    async def test_full_setup(self, service, api):
        lab = _lab()
        credentials = []
        steps = []

        await service.execute_setup(SetupContext(
            lab=lab, params=PARAMS, add_credential=credentials.append,
            update_step=lambda step, status, message: steps.append((step, status.value)),
        ))

        tenant = api.find("POST", "/v1/tenants")
        assert tenant["metadata"]["name"] == "lab-abc123"
        assert tenant["spec"]["emailId"] == "lab-admin-abc123@spectrocloud.com"
        password = api.find("PATCH", "/v1/auth/password/pw-token/activate")["password"]
        assert password.startswith("L3@rN-")

        assert len(credentials) == 1
        assert credentials[0].username == "lab-admin-abc123@spectrocloud.com"
        assert credentials[0].password == password
        assert credentials[0].expires_at == lab.ends_at
        assert lab.service_data["palette_tenant_id"] == "tenant-1"
        assert ("Connecting to Palette", "completed") in steps
        assert steps[-1] == ("Setting Password", "completed")

    @pytest.mark.asyncio
    async def test_login_failure(self, service, api):
        bad = PARAMS.model_copy(update={"system_password": "wrong"})

        with pytest.raises(ServiceError):
            await service.execute_setup(SetupContext(lab=_lab(), params=bad, add_credential=lambda c: None))

        assert api.find("POST", "/v1/tenants") is None

    @pytest.mark.asyncio
    async def test_missing_password_token(self, service, api):
        api.password_token = ""
        lab = _lab()

        with pytest.raises(ServiceError, match="password token"):
            await service.execute_setup(SetupContext(lab=lab, params=PARAMS, add_credential=lambda c: None))

        assert lab.service_data["palette_tenant_id"] == "tenant-1"


class TestCleanup:
    """Tests for PaletteTenantService.execute_cleanup."""

    @pytest.mark.asyncio
    async def test_deletes_recorded_tenant(self, service, api):
        lab = _lab()
        lab.service_data = {"palette_tenant_id": "tenant-1"}

        await service.execute_cleanup(CleanupContext(lab=lab, params=PARAMS))

        assert api.deleted == {"tenant-1"}

    @pytest.mark.asyncio
    async def test_looks_up_tenant_by_name(self, service, api):
        api.tenants = [
            {"metadata": {"name": "lab-other", "uid": "tenant-x"}},
            {"metadata": {"name": "lab-abc123", "uid": "tenant-7"}},
        ]

        await service.execute_cleanup(CleanupContext(lab=_lab(), params=PARAMS))

        assert api.deleted == {"tenant-7"}

    @pytest.mark.asyncio
    async def test_already_deleted_is_success(self, service, api):
        api.deleted = {"tenant-1"}
        lab = _lab()
        lab.service_data = {"palette_tenant_id": "tenant-1"}

        await service.execute_cleanup(CleanupContext(lab=lab, params=PARAMS))

    @pytest.mark.asyncio
    async def test_nothing_to_delete(self, service, api):
        await service.execute_cleanup(CleanupContext(lab=_lab(), params=PARAMS))

        assert not [r for r in api.requests if r[0] == "DELETE"]

    @pytest.mark.asyncio
    async def test_requires_params(self, service):
        with pytest.raises(ConfigurationError):
            await service.execute_cleanup(CleanupContext(lab=_lab()))
