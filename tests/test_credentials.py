"""Tests for credential resolution."""

import base64

import pytest

from vm_operator.context import ReconcileContext
from vm_operator.credentials import (
    CONFIG_MAP,
    SECRET,
    get_credential,
    resolve_basic_auth,
    resolve_tls,
)
from vm_operator.errors import (
    CredentialError,
    InvalidValueError,
    MissingKeyError,
    MissingObjectError,
)
from vm_operator.models import BasicAuth, TLSConfig


def b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


@pytest.fixture
def tls_secret(fake_client):
    fake_client.add(
        {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "tls", "namespace": "default"},
            "data": {"ca.crt": b64("CA"), "tls.key": b64("KEY")},
        }
    )
    fake_client.add(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "certs", "namespace": "default"},
            "data": {"tls.crt": "CERT"},
        }
    )
    return fake_client


class TestGetCredential:
    """Test cases for single key lookups."""

    @pytest.mark.asyncio
    async def test_secret_key_is_decoded(self, tls_secret, ctx):
        value = await get_credential(tls_secret, ctx, SECRET, "default", "tls", "ca.crt")
        assert value == "CA"

    @pytest.mark.asyncio
    async def test_config_map_key(self, tls_secret, ctx):
        value = await get_credential(tls_secret, ctx, CONFIG_MAP, "default", "certs", "tls.crt")
        assert value == "CERT"

    @pytest.mark.asyncio
    async def test_object_fetched_once_per_pass(self, tls_secret, ctx):
        """Test that two keys of one secret cost a single fetch."""
        await get_credential(tls_secret, ctx, SECRET, "default", "tls", "ca.crt")
        await get_credential(tls_secret, ctx, SECRET, "default", "tls", "tls.key")

        assert tls_secret.calls_for("get") == [("get", "Secret", "default", "tls")]
        assert len(ctx.cache) == 1

    @pytest.mark.asyncio
    async def test_new_pass_fetches_again(self, tls_secret, ctx):
        """Test that the cache does not outlive its pass."""
        await get_credential(tls_secret, ctx, SECRET, "default", "tls", "ca.crt")
        await get_credential(tls_secret, ReconcileContext.start(30), SECRET, "default", "tls", "ca.crt")

        assert len(tls_secret.calls_for("get")) == 2

    @pytest.mark.asyncio
    async def test_missing_key(self, tls_secret, ctx):
        """Test that a missing key is not reported as a missing object."""
        with pytest.raises(MissingKeyError) as exc_info:
            await get_credential(tls_secret, ctx, SECRET, "default", "tls", "cert.pem")

        assert not isinstance(exc_info.value, MissingObjectError)
        assert exc_info.value.key == "cert.pem"

    @pytest.mark.asyncio
    async def test_missing_object_remembered(self, fake_client, ctx):
        """Test that an absent secret is fetched only once per pass."""
        for _ in range(2):
            with pytest.raises(MissingObjectError) as exc_info:
                await get_credential(fake_client, ctx, SECRET, "default", "absent", "password")
            assert exc_info.value.name == "absent"

        assert len(fake_client.calls_for("get")) == 1

    @pytest.mark.asyncio
    async def test_api_failure_propagates(self, fake_client, ctx):
        fake_client.fail("get", "Secret", status=503)

        with pytest.raises(Exception) as exc_info:
            await get_credential(fake_client, ctx, SECRET, "default", "tls", "ca.crt")

        assert getattr(exc_info.value, "status", None) == 503
        assert len(ctx.cache) == 0

    @pytest.mark.asyncio
    async def test_undecodable_secret_value(self, fake_client, ctx):
        """Test that corrupt secret data is reported as a credential failure."""
        fake_client.add(
            {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": {"name": "am", "namespace": "default"},
                "data": {"alertmanager.yaml": "!!notbase64"},
            }
        )

        with pytest.raises(InvalidValueError) as exc_info:
            await get_credential(fake_client, ctx, SECRET, "default", "am", "alertmanager.yaml")

        assert isinstance(exc_info.value, CredentialError)
        assert exc_info.value.key == "alertmanager.yaml"

    @pytest.mark.asyncio
    async def test_unsupported_kind(self, fake_client, ctx):
        with pytest.raises(ValueError):
            await get_credential(fake_client, ctx, "Service", "default", "x", "y")


class TestResolvers:
    """Test cases for compound credential references."""

    @pytest.mark.asyncio
    async def test_resolve_tls_mixed_sources(self, tls_secret, ctx):
        tls = TLSConfig.model_validate(
            {
                "ca": {"secret": {"name": "tls", "key": "ca.crt"}},
                "cert": {"configMap": {"name": "certs", "key": "tls.crt"}},
                "keySecret": {"name": "tls", "key": "tls.key"},
            }
        )

        resolved = await resolve_tls(tls_secret, ctx, "default", tls)

        assert resolved == {"ca": "CA", "cert": "CERT", "key": "KEY"}
        assert len(tls_secret.calls_for("get")) == 2

    @pytest.mark.asyncio
    async def test_resolve_tls_missing_cert_key(self, tls_secret, ctx):
        tls = TLSConfig.model_validate({"cert": {"secret": {"name": "tls", "key": "cert.pem"}}})

        with pytest.raises(MissingKeyError):
            await resolve_tls(tls_secret, ctx, "default", tls)

    @pytest.mark.asyncio
    async def test_resolve_basic_auth(self, fake_client, ctx):
        fake_client.add(
            {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": {"name": "auth", "namespace": "default"},
                "data": {"user": b64("admin"), "pass": b64("s3cret")},
            }
        )
        auth = BasicAuth.model_validate(
            {"username": {"name": "auth", "key": "user"}, "password": {"name": "auth", "key": "pass"}}
        )

        resolved = await resolve_basic_auth(fake_client, ctx, "default", auth)

        assert resolved == {"username": "admin", "password": "s3cret"}

    @pytest.mark.asyncio
    async def test_resolve_nothing(self, fake_client, ctx):
        assert await resolve_basic_auth(fake_client, ctx, "default", None) == {}
        assert await resolve_tls(fake_client, ctx, "default", None) == {}
        assert fake_client.calls == []
