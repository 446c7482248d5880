"""
Provisioning backends.

A Provider performs the create / update / delete calls for one resource and
returns the concrete attributes, including provider-assigned identifiers.
`SimulatedProvider` is a deterministic in-memory control plane: identifiers
are derived from the stack and resource ids, so repeated passes agree.
"""
import hashlib
import json
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from stackgraph.credentials import InMemorySecretStore
from stackgraph.models.resource import Kind, Resource


class ProvisioningError(Exception):
    """Raised by a provider when the control plane rejects a call."""


class Provider:
    def create(self, resource: Resource, desired: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update(self, resource: Resource, desired: Dict[str, Any], current: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def delete(self, resource_id: str, kind: Kind, current: Dict[str, Any]) -> None:
        raise NotImplementedError


FailureRule = Union[str, BaseException, Callable[[str], Optional[BaseException]]]


class SimulatedProvider(Provider):
    def __init__(
        self,
        stack: str = "stack",
        region: str = "us-east-1",
        account: str = "000000000000",
        secrets: Optional[InMemorySecretStore] = None,
        latency: float = 0.0,
    ):
        self.stack = stack
        self.region = region
        self.account = account
        self.secrets = secrets if secrets is not None else InMemorySecretStore()
        self.latency = latency
        # resource id -> failure to raise on any call for that resource
        self.fail_on: Dict[str, FailureRule] = {}
        self.calls: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ helpers

    def _digest(self, resource_id: str, salt: str = "", length: int = 8) -> str:
        raw = f"{self.stack}/{resource_id}/{salt}".encode()
        return hashlib.sha1(raw).hexdigest()[:length]

    def _ip(self, resource_id: str, prefix: str) -> str:
        d = bytes.fromhex(self._digest(resource_id, prefix, 4))
        return f"{prefix}.{d[0]}.{max(d[1], 1)}"

    def _arn(self, service: str, path: str) -> str:
        return f"arn:aws:{service}:{self.region}:{self.account}:{path}"

    def _record(self, op: str, resource_id: str) -> None:
        with self._lock:
            self.calls.append((op, resource_id))
            rule = self.fail_on.get(resource_id)
        if self.latency:
            time.sleep(self.latency)
        if rule is None:
            return
        if callable(rule) and not isinstance(rule, BaseException):
            exc = rule(op)
            if exc is not None:
                raise exc
            return
        if isinstance(rule, BaseException):
            raise rule
        raise ProvisioningError(str(rule))

    def count(self, *ops: str) -> int:
        with self._lock:
            return sum(1 for op, _ in self.calls if not ops or op in ops)

    # ------------------------------------------------------------------ kinds

    def _generated(self, resource: Resource, desired: Dict[str, Any]) -> Dict[str, Any]:
        rid = resource.id
        kind = resource.kind
        slug = f"{self.stack}-{rid}".lower().replace("_", "-")

        if kind == Kind.NETWORK:
            return {"id": f"vpc-{self._digest(rid, length=17)}"}
        if kind == Kind.NETWORK_SEGMENT:
            return {"id": f"subnet-{self._digest(rid, length=17)}"}
        if kind == Kind.SECURITY_GROUP:
            return {"id": f"sg-{self._digest(rid, length=17)}"}
        if kind == Kind.SECURITY_RULE:
            return {"id": f"sgr-{self._digest(rid, length=17)}"}
        if kind == Kind.REPOSITORY:
            return {
                "uri": f"{self.account}.dkr.ecr.{self.region}.amazonaws.com/{desired['name']}",
                "arn": self._arn("ecr", f"repository/{desired['name']}"),
            }
        if kind == Kind.COMPUTE_SERVICE:
            task_def = {k: desired.get(k) for k in ("image", "environment", "cpu", "memory", "port")}
            revision = hashlib.sha1(json.dumps(task_def, sort_keys=True, default=str).encode()).hexdigest()[:12]
            return {
                "arn": self._arn("ecs", f"service/{self.stack}/{slug}"),
                "name": slug,
                "revision": revision,
            }
        if kind == Kind.INSTANCE:
            public = self._ip(rid, "3.90") if desired.get("assign_public_ip") else None
            return {
                "id": f"i-{self._digest(rid, length=17)}",
                "private_ip": self._ip(rid, "10.0"),
                "public_ip": public,
            }
        if kind == Kind.DATA_STORE:
            hostname = f"{slug}.{self._digest(rid, 'rds', 12)}.{self.region}.rds.amazonaws.com"
            creds = desired.get("credentials")
            if isinstance(creds, dict) and creds.get("secret"):
                secret_ref = creds["secret"]
            else:
                secret_ref = self._arn("secretsmanager", f"secret:{self.stack}/{rid}/credentials")
                self.secrets.put_secret_string(secret_ref, json.dumps({
                    "engine": desired.get("engine"),
                    "host": hostname,
                    "port": desired.get("port"),
                    "username": desired.get("username"),
                    "password": desired.get("password"),
                    "dbname": desired.get("database"),
                }))
            return {
                "id": slug,
                "endpoint": {"hostname": hostname, "port": desired.get("port")},
                "secret_ref": secret_ref,
            }
        if kind == Kind.LOAD_BALANCER:
            scheme = "" if desired.get("internet_facing", True) else "internal-"
            name = slug[:24]
            return {
                "arn": self._arn("elasticloadbalancing", f"loadbalancer/app/{name}/{self._digest(rid, length=16)}"),
                "dns_name": f"{scheme}{name}-{self._digest(rid, 'dns', 10)}.{self.region}.elb.amazonaws.com",
            }
        if kind == Kind.LISTENER:
            return {
                "arn": self._arn("elasticloadbalancing", f"listener/app/{slug}/{self._digest(rid, length=16)}"),
                "action": desired.get("default_action"),
            }
        if kind == Kind.TARGET_GROUP:
            return {"arn": self._arn("elasticloadbalancing", f"targetgroup/{slug[:32]}/{self._digest(rid, length=16)}")}
        raise ProvisioningError(f"unsupported kind {kind}")

    def _concrete(self, resource: Resource, desired: Dict[str, Any]) -> Dict[str, Any]:
        hidden = set(resource.schema.credential_bearing)
        attrs = {k: v for k, v in desired.items() if k not in hidden}
        attrs.update(self._generated(resource, desired))
        return attrs

    # ------------------------------------------------------------------ Provider

    def create(self, resource: Resource, desired: Dict[str, Any]) -> Dict[str, Any]:
        self._record("create", resource.id)
        return self._concrete(resource, desired)

    def update(self, resource: Resource, desired: Dict[str, Any], current: Dict[str, Any]) -> Dict[str, Any]:
        self._record("update", resource.id)
        return self._concrete(resource, desired)

    def delete(self, resource_id: str, kind: Kind, current: Dict[str, Any]) -> None:
        self._record("delete", resource_id)
        owned = self._arn("secretsmanager", f"secret:{self.stack}/{resource_id}/credentials")
        if kind == Kind.DATA_STORE and current.get("secret_ref") == owned:
            self.secrets.delete_secret(owned)
