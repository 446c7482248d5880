"""
Database credential fetch contract used by the deployed compute service.

The secret store itself is an external collaborator. `SecretsManagerClient`
talks to AWS Secrets Manager through boto3; `InMemorySecretStore` backs the
simulated provider and the tests.
"""
import json
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

import boto3

from stackgraph.errors import IncompleteCredentials, SecretUnavailable

# Secret payload key -> DbCredentials field
_REQUIRED_KEYS = (
    ("host", "host"),
    ("username", "user"),
    ("password", "password"),
    ("dbname", "database"),
    ("port", "port"),
)


@dataclass(frozen=True)
class DbCredentials:
    host: str
    user: str
    password: str = field(repr=False)
    database: str
    port: int

    def as_pool_config(self) -> dict:
        return {
            "host": self.host,
            "user": self.user,
            "password": self.password,
            "database": self.database,
            "port": self.port,
        }


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delays: Tuple[float, ...] = (0.5, 1.0, 2.0)

    def delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based); the schedule's last entry repeats."""
        if not self.delays:
            return 0.0
        return self.delays[min(attempt - 1, len(self.delays) - 1)]


class InMemorySecretStore:
    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self._secrets: Dict[str, str] = dict(secrets or {})
        self._lock = threading.Lock()

    def put_secret_string(self, secret_ref: str, value: str) -> None:
        with self._lock:
            self._secrets[secret_ref] = value

    def get_secret_string(self, secret_ref: str) -> Optional[str]:
        with self._lock:
            if secret_ref not in self._secrets:
                raise KeyError(secret_ref)
            return self._secrets[secret_ref]

    def delete_secret(self, secret_ref: str) -> None:
        with self._lock:
            self._secrets.pop(secret_ref, None)

    def __contains__(self, secret_ref: str) -> bool:
        return secret_ref in self._secrets


class SecretsManagerClient:
    def __init__(self, region: Optional[str] = None, client=None):
        self._client = client or boto3.client("secretsmanager", region_name=region)

    def get_secret_string(self, secret_ref: str) -> Optional[str]:
        return self._client.get_secret_value(SecretId=secret_ref).get("SecretString")


def fetch_credentials(secret_ref: str, client) -> DbCredentials:
    """
    Fetch and validate database credentials from a secret.

    Raises SecretUnavailable when the secret cannot be read or is not a JSON
    object, and IncompleteCredentials when any connection field is missing.
    """
    try:
        raw = client.get_secret_string(secret_ref)
    except Exception as exc:
        raise SecretUnavailable(secret_ref, str(exc) or exc.__class__.__name__) from exc

    if not raw:
        raise SecretUnavailable(secret_ref, "secret string is empty")
    try:
        secret = json.loads(raw)
    except ValueError as exc:
        raise SecretUnavailable(secret_ref, f"secret string is not JSON: {exc}") from exc
    if not isinstance(secret, dict):
        raise SecretUnavailable(secret_ref, "secret string is not a JSON object")

    missing = [key for key, _ in _REQUIRED_KEYS if secret.get(key) in (None, "")]
    if missing:
        raise IncompleteCredentials(secret_ref, missing)

    # a port that is not a number is as unusable as a missing one
    try:
        port = int(secret["port"])
    except (TypeError, ValueError):
        raise IncompleteCredentials(secret_ref, ["port"])

    return DbCredentials(
        host=str(secret["host"]),
        user=str(secret["username"]),
        password=str(secret["password"]),
        database=str(secret["dbname"]),
        port=port,
    )


def fetch_with_retry(
    secret_ref: str,
    client,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
) -> DbCredentials:
    """Retry fetch_credentials on the policy's schedule. Failures are never cached."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return fetch_credentials(secret_ref, client)
        except (SecretUnavailable, IncompleteCredentials):
            if attempt >= policy.max_attempts:
                raise
            sleep(policy.delay(attempt))
