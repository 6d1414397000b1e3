"""Credential providers for the GitLab token and identity.

The worker only ever asks for a credential by name. In AWS deployments the
names are SSM Parameter Store paths (``/moondawg/gitlab/token``); locally the
same names are mapped onto environment variables
(``MOONDAWG_GITLAB_TOKEN``).
"""

from __future__ import annotations

import asyncio
import os
import re
import typing as typ

from botocore.exceptions import BotoCoreError, ClientError

if typ.TYPE_CHECKING:
    import collections.abc as cabc


class CredentialUnavailable(RuntimeError):  # noqa: N818 - name used by operators
    """Raised when a credential cannot be obtained for the current run."""

    def __init__(self, name: str, reason: str) -> None:
        """Record which credential failed and why."""
        self.name = name
        self.reason = reason
        super().__init__(f"credential {name!r} unavailable: {reason}")

    @classmethod
    def not_set(cls, name: str) -> CredentialUnavailable:
        """Return an error for a credential with no configured value."""
        return cls(name, "no value configured")

    @classmethod
    def empty(cls, name: str) -> CredentialUnavailable:
        """Return an error for a credential that resolved to whitespace."""
        return cls(name, "value is empty")


class CredentialProvider(typ.Protocol):
    """Supplies secret or identity strings on demand."""

    async def get_credential(self, name: str) -> str:
        """Return the credential value or raise :class:`CredentialUnavailable`."""
        ...


_NON_WORD = re.compile(r"[^0-9A-Za-z]+")


def env_var_for(name: str) -> str:
    """Map a parameter path onto an environment variable name.

    >>> env_var_for("/moondawg/gitlab/token")
    'MOONDAWG_GITLAB_TOKEN'
    """
    return _NON_WORD.sub("_", name).strip("_").upper()


class EnvironmentCredentialProvider:
    """Read credentials from environment variables."""

    def __init__(self, environ: cabc.Mapping[str, str] | None = None) -> None:
        """Bind to ``environ`` (defaults to :data:`os.environ`)."""
        self._environ = os.environ if environ is None else environ

    async def get_credential(self, name: str) -> str:
        """Return the value of the variable derived from ``name``."""
        raw = self._environ.get(env_var_for(name))
        if raw is None:
            raise CredentialUnavailable.not_set(name)
        value = raw.strip()
        if not value:
            raise CredentialUnavailable.empty(name)
        return value


class ParameterStoreCredentialProvider:
    """Read credentials from AWS SSM Parameter Store.

    ``SecureString`` parameters are decrypted. boto3 is blocking, so lookups
    run in a worker thread to keep the event loop free.
    """

    def __init__(self, ssm_client: typ.Any = None) -> None:  # noqa: ANN401
        """Use ``ssm_client`` or create a default boto3 SSM client."""
        if ssm_client is None:
            import boto3

            ssm_client = boto3.client("ssm")
        self._ssm = ssm_client

    def _fetch(self, name: str) -> str:
        try:
            response = self._ssm.get_parameter(Name=name, WithDecryption=True)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "ClientError")
            raise CredentialUnavailable(name, code) from exc
        except BotoCoreError as exc:
            raise CredentialUnavailable(name, type(exc).__name__) from exc

        value = response.get("Parameter", {}).get("Value")
        if not isinstance(value, str):
            raise CredentialUnavailable.not_set(name)
        if not value.strip():
            raise CredentialUnavailable.empty(name)
        return value.strip()

    async def get_credential(self, name: str) -> str:
        """Return the decrypted parameter value for ``name``."""
        return await asyncio.to_thread(self._fetch, name)


__all__ = [
    "CredentialProvider",
    "CredentialUnavailable",
    "EnvironmentCredentialProvider",
    "ParameterStoreCredentialProvider",
    "env_var_for",
]
