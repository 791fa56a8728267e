from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from azure.core.exceptions import AzureError
from azure.identity import ClientSecretCredential
from azure.mgmt.storage import StorageManagementClient
from kubernetes.client import ApiException

from nodeagent.src.arkclient import ArkV1Client

LOGGER = logging.getLogger(__name__)

RESOURCE_GROUP_CONFIG_KEY = "resourceGroup"
STORAGE_ACCOUNT_CONFIG_KEY = "storageAccount"

AZURE_CREDENTIAL_ENV_VARS = (
    "AZURE_SUBSCRIPTION_ID",
    "AZURE_TENANT_ID",
    "AZURE_CLIENT_ID",
    "AZURE_CLIENT_SECRET",
)


class ProvisionError(RuntimeError):
    """Base class for failures that prevent the agent from starting."""


class LocationNotFound(ProvisionError):
    pass


class APIUnavailable(ProvisionError):
    pass


class InvalidProviderConfig(ProvisionError):
    pass


@dataclass(frozen=True)
class StorageLocation:
    """The parts of a ``BackupStorageLocation`` the agent cares about."""

    name: str
    provider: str
    config: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> StorageLocation:
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        raw_config = spec.get("config") or {}
        return cls(
            name=str(metadata.get("name", "")),
            provider=str(spec.get("provider", "")),
            config={str(k): "" if v is None else str(v) for k, v in raw_config.items()},
        )


@dataclass(frozen=True)
class ResticEnvironment:
    """Environment variables the data tool needs for the configured provider.

    Built once before any background task starts and then only read, so it is
    shared by reference without locking.
    """

    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    def process_env(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Return *base* (default ``os.environ``) overlaid with the provider variables."""
        merged = dict(os.environ if base is None else base)
        merged.update(self.variables)
        return merged


StorageKeyLookup = Callable[[Mapping[str, str], str, str], str]


def lookup_azure_storage_account_key(
    credentials: Mapping[str, str], resource_group: str, storage_account: str
) -> str:
    """Fetch the first access key of an Azure storage account via the management API."""
    credential = ClientSecretCredential(
        tenant_id=credentials["AZURE_TENANT_ID"],
        client_id=credentials["AZURE_CLIENT_ID"],
        client_secret=credentials["AZURE_CLIENT_SECRET"],
    )
    storage_client = StorageManagementClient(credential, credentials["AZURE_SUBSCRIPTION_ID"])
    result = storage_client.storage_accounts.list_keys(resource_group, storage_account)
    keys = list(result.keys or [])
    if not keys or not keys[0].value:
        raise InvalidProviderConfig(f"storage account {storage_account} has no access keys")
    return keys[0].value


def azure_restic_environment(
    config: Mapping[str, str],
    env: Mapping[str, str] | None = None,
    key_lookup: StorageKeyLookup = lookup_azure_storage_account_key,
) -> ResticEnvironment:
    """Build ``AZURE_ACCOUNT_NAME``/``AZURE_ACCOUNT_KEY`` for the data tool.

    Requires ``resourceGroup`` and ``storageAccount`` in the location config
    and the service-principal variables in the process environment.
    """
    values = os.environ if env is None else env

    missing_config = [
        key for key in (RESOURCE_GROUP_CONFIG_KEY, STORAGE_ACCOUNT_CONFIG_KEY) if not config.get(key)
    ]
    if missing_config:
        raise InvalidProviderConfig(
            f"azure backup storage location config is missing: {', '.join(missing_config)}"
        )
    missing_env = [name for name in AZURE_CREDENTIAL_ENV_VARS if not values.get(name)]
    if missing_env:
        raise InvalidProviderConfig(
            f"unable to get all required environment variables: {', '.join(missing_env)}"
        )

    storage_account = config[STORAGE_ACCOUNT_CONFIG_KEY]
    credentials = {name: values[name] for name in AZURE_CREDENTIAL_ENV_VARS}
    try:
        account_key = key_lookup(credentials, config[RESOURCE_GROUP_CONFIG_KEY], storage_account)
    except AzureError as exc:
        raise InvalidProviderConfig(
            f"unable to get key for storage account {storage_account}: {exc}"
        ) from exc

    return ResticEnvironment(
        {"AZURE_ACCOUNT_NAME": storage_account, "AZURE_ACCOUNT_KEY": account_key}
    )


ProviderEnvironmentBuilder = Callable[[Mapping[str, str]], ResticEnvironment]

PROVIDER_ENVIRONMENTS: dict[str, ProviderEnvironmentBuilder] = {
    "azure": azure_restic_environment,
}


class CredentialProvisioner:
    """Resolves the default backup storage location and prepares provider credentials.

    Call :meth:`provision` exactly once, before any watch or reconciliation
    task starts; the returned :class:`ResticEnvironment` is then handed to the
    reconciliation loops.
    """

    def __init__(
        self,
        ark_client: ArkV1Client,
        namespace: str,
        providers: Mapping[str, ProviderEnvironmentBuilder] | None = None,
    ) -> None:
        self.ark_client = ark_client
        self.namespace = namespace
        self.providers = dict(PROVIDER_ENVIRONMENTS if providers is None else providers)
        self._provisioned = False

    def resolve_location(self, location_name: str) -> StorageLocation:
        try:
            obj = self.ark_client.backup_storage_locations(self.namespace).get(location_name)
        except ApiException as exc:
            if exc.status == 404:
                raise LocationNotFound(
                    f"backup storage location {self.namespace}/{location_name} not found"
                ) from exc
            raise APIUnavailable(
                f"unable to get backup storage location {self.namespace}/{location_name}: "
                f"{exc.status} {exc.reason}"
            ) from exc
        except Exception as exc:
            raise APIUnavailable(
                f"unable to get backup storage location {self.namespace}/{location_name}: {exc}"
            ) from exc
        return StorageLocation.from_object(obj)

    def provision(self, location_name: str) -> ResticEnvironment:
        if self._provisioned:
            raise RuntimeError("credentials have already been provisioned")
        self._provisioned = True

        location = self.resolve_location(location_name)
        builder = self.providers.get(location.provider)
        if builder is None:
            LOGGER.info(
                "Backup storage location %s uses provider %s; no extra credentials needed",
                location.name,
                location.provider,
            )
            return ResticEnvironment()

        environment = builder(location.config)
        LOGGER.info(
            "Provisioned %s credentials for backup storage location %s (%s)",
            location.provider,
            location.name,
            ", ".join(sorted(environment.variables)),
        )
        return environment
