"""
Credential fetch tests — validation of the secret payload and retry schedule.
"""
import json

import pytest

from stackgraph.credentials import (
    InMemorySecretStore,
    RetryPolicy,
    SecretsManagerClient,
    fetch_credentials,
    fetch_with_retry,
)
from stackgraph.errors import IncompleteCredentials, SecretUnavailable

SECRET_REF = "arn:aws:secretsmanager:us-east-1:000000000000:secret:prod-app/db/credentials"

_PAYLOAD = {
    "engine": "mysql",
    "host": "prod-app-db.abc.us-east-1.rds.amazonaws.com",
    "port": 3306,
    "username": "admin",
    "password": "s3cr3t-value",
    "dbname": "prodapp",
}


def _store(payload=None):
    return InMemorySecretStore({SECRET_REF: json.dumps(_PAYLOAD if payload is None else payload)})


class _FlakyStore:
    """Fails a number of times before answering."""

    def __init__(self, failures, value):
        self.failures = failures
        self.value = value
        self.calls = 0

    def get_secret_string(self, secret_ref):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("endpoint unreachable")
        return self.value


class TestFetchCredentials:
    def test_complete_secret(self):
        creds = fetch_credentials(SECRET_REF, _store())
        assert creds.host == _PAYLOAD["host"]
        assert creds.user == "admin"
        assert creds.database == "prodapp"
        assert creds.port == 3306
        assert creds.as_pool_config()["password"] == "s3cr3t-value"

    def test_password_not_in_repr(self):
        assert "s3cr3t-value" not in repr(fetch_credentials(SECRET_REF, _store()))

    def test_port_as_string(self):
        creds = fetch_credentials(SECRET_REF, _store({**_PAYLOAD, "port": "3306"}))
        assert creds.port == 3306

    def test_non_numeric_port(self):
        with pytest.raises(IncompleteCredentials) as exc:
            fetch_credentials(SECRET_REF, _store({**_PAYLOAD, "port": "abc"}))
        assert exc.value.missing == ["port"]

    def test_port_of_wrong_type(self):
        with pytest.raises(IncompleteCredentials) as exc:
            fetch_credentials(SECRET_REF, _store({**_PAYLOAD, "port": [3306]}))
        assert exc.value.missing == ["port"]

    def test_missing_password(self):
        payload = {k: v for k, v in _PAYLOAD.items() if k != "password"}
        with pytest.raises(IncompleteCredentials) as exc:
            fetch_credentials(SECRET_REF, _store(payload))
        assert exc.value.missing == ["password"]

    def test_empty_field_counts_as_missing(self):
        with pytest.raises(IncompleteCredentials) as exc:
            fetch_credentials(SECRET_REF, _store({**_PAYLOAD, "host": "", "dbname": None}))
        assert exc.value.missing == ["host", "dbname"]

    def test_unknown_secret(self):
        with pytest.raises(SecretUnavailable):
            fetch_credentials("arn:missing", _store())

    def test_not_json(self):
        store = InMemorySecretStore({SECRET_REF: "user=admin;password=x"})
        with pytest.raises(SecretUnavailable):
            fetch_credentials(SECRET_REF, store)

    def test_not_an_object(self):
        with pytest.raises(SecretUnavailable):
            fetch_credentials(SECRET_REF, _store(["admin", "x"]))

    def test_empty_secret(self):
        store = InMemorySecretStore({SECRET_REF: ""})
        with pytest.raises(SecretUnavailable):
            fetch_credentials(SECRET_REF, store)


class TestRetry:
    def test_recovers_after_transient_failures(self):
        slept = []
        store = _FlakyStore(2, json.dumps(_PAYLOAD))
        creds = fetch_with_retry(SECRET_REF, store, RetryPolicy(max_attempts=3), sleep=slept.append)
        assert creds.user == "admin"
        assert store.calls == 3
        assert slept == [0.5, 1.0]

    def test_gives_up_after_max_attempts(self):
        slept = []
        store = _FlakyStore(5, json.dumps(_PAYLOAD))
        with pytest.raises(SecretUnavailable):
            fetch_with_retry(SECRET_REF, store, RetryPolicy(max_attempts=3), sleep=slept.append)
        assert store.calls == 3
        assert slept == [0.5, 1.0]

    def test_incomplete_secret_is_retried(self):
        payload = {k: v for k, v in _PAYLOAD.items() if k != "password"}
        store = _FlakyStore(0, json.dumps(payload))
        with pytest.raises(IncompleteCredentials):
            fetch_with_retry(SECRET_REF, store, RetryPolicy(max_attempts=2, delays=(0.1,)), sleep=lambda s: None)
        assert store.calls == 2

    def test_last_delay_repeats(self):
        policy = RetryPolicy(max_attempts=6, delays=(1, 2))
        assert [policy.delay(n) for n in range(1, 5)] == [1, 2, 2, 2]


class _FakeBotoClient:
    def __init__(self, secrets):
        self.secrets = secrets
        self.requested = []

    def get_secret_value(self, SecretId):
        self.requested.append(SecretId)
        return {"ARN": SecretId, "SecretString": self.secrets[SecretId]}


class TestSecretsManagerClient:
    def test_reads_secret_string(self):
        boto = _FakeBotoClient({SECRET_REF: json.dumps(_PAYLOAD)})
        creds = fetch_credentials(SECRET_REF, SecretsManagerClient(client=boto))
        assert creds.host == _PAYLOAD["host"]
        assert boto.requested == [SECRET_REF]

    def test_client_errors_become_unavailable(self):
        with pytest.raises(SecretUnavailable):
            fetch_credentials("arn:other", SecretsManagerClient(client=_FakeBotoClient({})))
