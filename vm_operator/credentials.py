"""Resolution of secret and config map references."""

import base64
import binascii
import logging
from typing import TYPE_CHECKING, Any, Optional

from kubernetes.client.exceptions import ApiException

from .errors import InvalidValueError, MissingKeyError, MissingObjectError
from .models import (
    BasicAuth,
    ConfigMapKeySelector,
    SecretKeySelector,
    SecretOrConfigMap,
    TLSConfig,
)

if TYPE_CHECKING:
    from .context import ReconcileContext

logger = logging.getLogger(__name__)

SECRET = "Secret"
CONFIG_MAP = "ConfigMap"

_MISSING = object()


class CredentialCache:
    """
    Objects fetched during one reconcile pass.

    Whole objects are cached by kind, namespace and name, so any number of
    keys read from the same secret costs a single fetch. Objects found to be
    absent are remembered as well.
    """

    def __init__(self):
        self._objects: dict[tuple[str, str, str], Optional[dict[str, Any]]] = {}

    def lookup(self, kind: str, namespace: str, name: str) -> Any:
        return self._objects.get((kind, namespace, name), _MISSING)

    def store(self, kind: str, namespace: str, name: str, obj: Optional[dict[str, Any]]) -> None:
        self._objects[(kind, namespace, name)] = obj

    def __contains__(self, key: tuple[str, str, str]) -> bool:
        return key in self._objects

    def __len__(self) -> int:
        return len(self._objects)


def _decode(value: str, kind: str, namespace: str, name: str, key: str) -> str:
    try:
        return base64.b64decode(value).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise InvalidValueError(kind, namespace, name, key) from e


def _extract(kind: str, obj: dict[str, Any], namespace: str, name: str, key: str) -> str:
    data = obj.get("data") or {}
    if kind == SECRET:
        if key in data:
            return _decode(data[key], kind, namespace, name, key)
        string_data = obj.get("stringData") or {}
        if key in string_data:
            return string_data[key]
    else:
        if key in data:
            return data[key]
        binary_data = obj.get("binaryData") or {}
        if key in binary_data:
            return _decode(binary_data[key], kind, namespace, name, key)
    raise MissingKeyError(kind, namespace, name, key)


async def get_credential(
    client,
    ctx: "ReconcileContext",
    kind: str,
    namespace: str,
    name: str,
    key: str,
) -> str:
    """
    Return one key of a Secret or ConfigMap.

    Args:
        client: Kubernetes client
        ctx: Current reconcile context holding the pass cache
        kind: SECRET or CONFIG_MAP
        namespace: Object namespace
        name: Object name
        key: Data key

    Returns:
        Decoded value

    Raises:
        MissingObjectError: If the object does not exist
        MissingKeyError: If the object exists but lacks the key
        InvalidValueError: If the value is not valid base64 text
        ApiException: If the lookup failed for any other reason
    """
    if kind not in (SECRET, CONFIG_MAP):
        raise ValueError(f"credentials cannot be read from {kind}")

    obj = ctx.cache.lookup(kind, namespace, name)
    if obj is _MISSING:
        try:
            obj = await ctx.call(client.get(kind, namespace, name))
        except ApiException as e:
            if e.status != 404:
                raise
            obj = None
        ctx.cache.store(kind, namespace, name, obj)

    if obj is None:
        raise MissingObjectError(kind, namespace, name)
    return _extract(kind, obj, namespace, name, key)


async def get_secret_value(client, ctx, namespace: str, selector: SecretKeySelector) -> str:
    return await get_credential(client, ctx, SECRET, namespace, selector.name, selector.key)


async def get_configmap_value(client, ctx, namespace: str, selector: ConfigMapKeySelector) -> str:
    return await get_credential(client, ctx, CONFIG_MAP, namespace, selector.name, selector.key)


async def resolve_secret_or_configmap(
    client, ctx, namespace: str, ref: Optional[SecretOrConfigMap]
) -> Optional[str]:
    """Resolve a value that may live in either a Secret or a ConfigMap."""
    if ref is None:
        return None
    if ref.secret is not None:
        return await get_secret_value(client, ctx, namespace, ref.secret)
    if ref.config_map is not None:
        return await get_configmap_value(client, ctx, namespace, ref.config_map)
    return None


async def resolve_basic_auth(
    client, ctx, namespace: str, auth: Optional[BasicAuth]
) -> dict[str, str]:
    """Resolve basic auth username and password."""
    resolved: dict[str, str] = {}
    if auth is None:
        return resolved
    if auth.username is not None:
        resolved["username"] = await get_secret_value(client, ctx, namespace, auth.username)
    if auth.password is not None:
        resolved["password"] = await get_secret_value(client, ctx, namespace, auth.password)
    return resolved


async def resolve_tls(client, ctx, namespace: str, tls: Optional[TLSConfig]) -> dict[str, str]:
    """Resolve the CA, certificate and key of a TLS config."""
    resolved: dict[str, str] = {}
    if tls is None:
        return resolved
    ca = await resolve_secret_or_configmap(client, ctx, namespace, tls.ca)
    if ca is not None:
        resolved["ca"] = ca
    cert = await resolve_secret_or_configmap(client, ctx, namespace, tls.cert)
    if cert is not None:
        resolved["cert"] = cert
    if tls.key_secret is not None:
        resolved["key"] = await get_secret_value(client, ctx, namespace, tls.key_secret)
    return resolved
