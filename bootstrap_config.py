"""
This module defines the data structures for the GCP project bootstrap.
The YAML stack description is loaded into these dataclasses and validated
before any resource is declared.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pulumi
import yaml

REQUIRED_KEYS = ["team", "service", "environment", "region"]

# APIs the identity chain itself needs, whatever the stack asks for.
BASE_APIS = [
    "cloudresourcemanager.googleapis.com",
    "iam.googleapis.com",
    "iamcredentials.googleapis.com",
    "serviceusage.googleapis.com",
]

DEFAULT_ADMIN_ROLES = [
    "roles/iam.serviceAccountAdmin",
    "roles/resourcemanager.projectIamAdmin",
    "roles/serviceusage.serviceUsageAdmin",
]

# Minimal roles for GKE node pools.
DEFAULT_NODE_ROLES = [
    "roles/artifactregistry.reader",
    "roles/logging.logWriter",
    "roles/monitoring.metricWriter",
    "roles/monitoring.viewer",
    "roles/stackdriver.resourceMetadata.writer",
]

# Keys the identity chain registers in the builder's resource map.
API_PROPAGATION_KEY = "api-propagation"
IAM_PROPAGATION_KEY = "iam-propagation"
ADMIN_PROVIDER_KEY = "admin-provider"

ACCOUNT_ID_PATTERN = re.compile(r"^[a-z][-a-z0-9]{4,28}[a-z0-9]$")
# Go durations: a sequence of decimal numbers, each with a unit suffix.
DURATION_PATTERN = re.compile(r"^(?:(?:\d+(?:\.\d*)?|\.\d+)(?:ns|us|µs|ms|s|m|h))+$")
DURATION_PART_PATTERN = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1,
    "m": 60,
    "h": 3600,
}
LIFETIME_PATTERN = re.compile(r"^(\d+)s$")
MAX_TOKEN_LIFETIME_SECONDS = 43200
ROLE_PREFIXES = ("roles/", "projects/", "organizations/")
MEMBER_PREFIXES = ("user:", "serviceAccount:", "group:")
IDENTITIES = ("admin", "seed")


@dataclass
class ServiceAccountConfig:
    name: str
    account_id: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    roles: List[str] = field(default_factory=list)


@dataclass
class WaitConfig:
    api_propagation: str = "30s"
    iam_propagation: str = "60s"


@dataclass
class ImpersonationConfig:
    scopes: List[str] = field(default_factory=lambda: ["cloud-platform", "userinfo-email"])
    lifetime: str = "3600s"


@dataclass
class GCPResource:
    name: str
    type: str
    args: Dict[str, Any] = field(default_factory=dict)
    custom_name: Optional[str] = None
    identity: str = "admin"
    depends_on: List[str] = field(default_factory=list)


@dataclass
class Config:
    team: str
    service: str
    environment: str
    region: str
    project: str
    admin_service_account: ServiceAccountConfig
    labels: Optional[Dict[str, str]] = None
    apis: List[str] = field(default_factory=list)
    seed_member: Optional[str] = None
    node_service_accounts: List[ServiceAccountConfig] = field(default_factory=list)
    waits: WaitConfig = field(default_factory=WaitConfig)
    impersonation: ImpersonationConfig = field(default_factory=ImpersonationConfig)
    gcp_resources: List[GCPResource] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], project: Optional[str] = None) -> "Config":
        """Build a validated Config from a loaded YAML mapping.

        ``project`` overrides the ``project`` key; when both are absent the
        ``gcp:project`` stack setting is used.
        """
        for key in REQUIRED_KEYS:
            if key not in data:
                raise ValueError(f"Missing required configuration key: {key}")

        project = project or data.get("project") or pulumi.Config("gcp").get("project")
        if not project:
            raise ValueError("Missing required configuration key: project (or gcp:project stack setting)")

        admin = _parse_service_account(
            data.get("admin_service_account") or {"account_id": "project-admin"},
            default_name="admin",
            default_roles=DEFAULT_ADMIN_ROLES,
        )
        nodes = [
            _parse_service_account(entry, default_name=None, default_roles=DEFAULT_NODE_ROLES)
            for entry in data.get("node_service_accounts") or []
        ]

        seed_member = data.get("seed_member")
        if seed_member is not None and not str(seed_member).startswith(MEMBER_PREFIXES):
            raise ValueError(
                f"seed_member '{seed_member}' must start with one of {', '.join(MEMBER_PREFIXES)}"
            )

        waits_data = data.get("waits") or {}
        waits = WaitConfig(**{k: str(v) for k, v in waits_data.items() if k in ("api_propagation", "iam_propagation")})
        impersonation_data = data.get("impersonation") or {}
        impersonation = ImpersonationConfig(
            scopes=list(impersonation_data.get("scopes") or ImpersonationConfig().scopes),
            lifetime=str(impersonation_data.get("lifetime", ImpersonationConfig().lifetime)),
        )

        config = cls(
            team=str(data["team"]),
            service=str(data["service"]),
            environment=str(data["environment"]),
            region=str(data["region"]),
            project=str(project),
            admin_service_account=admin,
            labels=data.get("labels"),
            apis=list(data.get("apis") or []),
            seed_member=seed_member,
            node_service_accounts=nodes,
            waits=waits,
            impersonation=impersonation,
            gcp_resources=[_parse_resource(entry) for entry in data.get("gcp_resources") or []],
        )
        config.validate()
        return config

    def chain_resource_keys(self) -> List[str]:
        keys = [api_resource_key(api) for api in required_apis(self)]
        return keys + [API_PROPAGATION_KEY, IAM_PROPAGATION_KEY, ADMIN_PROVIDER_KEY]

    def validate(self) -> None:
        accounts = [self.admin_service_account] + self.node_service_accounts
        reserved = set(self.chain_resource_keys())
        seen_ids = set()
        seen_names = set()
        for account in accounts:
            if account.name in reserved:
                raise ValueError(f"Service account name '{account.name}' is reserved for the bootstrap chain")
            if not ACCOUNT_ID_PATTERN.match(account.account_id):
                raise ValueError(
                    f"Invalid service account id '{account.account_id}': "
                    "6-30 characters, lowercase letters, digits and hyphens, starting with a letter"
                )
            if account.account_id in seen_ids:
                raise ValueError(f"Duplicate service account id: {account.account_id}")
            if account.name in seen_names:
                raise ValueError(f"Duplicate service account name: {account.name}")
            seen_ids.add(account.account_id)
            seen_names.add(account.name)
            seen_roles = set()
            for role in account.roles:
                if not role.startswith(ROLE_PREFIXES):
                    raise ValueError(f"Invalid role '{role}' for service account '{account.name}'")
                if role in seen_roles:
                    raise ValueError(f"Duplicate role '{role}' for service account '{account.name}'")
                seen_roles.add(role)

        for key in ("api_propagation", "iam_propagation"):
            value = getattr(self.waits, key)
            if duration_seconds(value) <= 0:
                raise ValueError(f"Wait '{key}' must be a positive duration, got '{value}'")

        m = LIFETIME_PATTERN.match(self.impersonation.lifetime)
        if not m or not 0 < int(m.group(1)) <= MAX_TOKEN_LIFETIME_SECONDS:
            raise ValueError(
                f"Invalid token lifetime '{self.impersonation.lifetime}': "
                f"expected '<seconds>s' up to {MAX_TOKEN_LIFETIME_SECONDS}s"
            )
        if not self.impersonation.scopes:
            raise ValueError("impersonation.scopes must not be empty")

        resource_names = set()
        for resource in self.gcp_resources:
            if resource.name in reserved:
                raise ValueError(f"gcp_resources name '{resource.name}' is reserved for the bootstrap chain")
            if resource.name in seen_names:
                raise ValueError(f"gcp_resources name '{resource.name}' clashes with a service account name")
            if resource.name in resource_names:
                raise ValueError(f"Duplicate gcp_resources name: {resource.name}")
            resource_names.add(resource.name)


def _parse_service_account(entry: Dict[str, Any], default_name: Optional[str],
                           default_roles: List[str]) -> ServiceAccountConfig:
    if not isinstance(entry, dict):
        raise ValueError(f"Service account entry must be a mapping, got: {entry!r}")
    account_id = entry.get("account_id") or entry.get("name")
    if not account_id:
        raise ValueError(f"Service account entry needs 'account_id' or 'name': {entry!r}")
    roles = entry.get("roles")
    return ServiceAccountConfig(
        name=entry.get("name") or default_name or account_id,
        account_id=account_id,
        display_name=entry.get("display_name"),
        description=entry.get("description"),
        roles=list(default_roles if roles is None else roles),
    )


def _parse_resource(entry: Dict[str, Any]) -> GCPResource:
    for key in ("name", "type"):
        if key not in entry:
            raise ValueError(f"gcp_resources entry is missing '{key}': {entry!r}")
    if "." not in entry["type"]:
        raise ValueError(f"Resource type '{entry['type']}' must look like '<module>.<Class>'")
    identity = entry.get("identity", "admin")
    if identity not in IDENTITIES:
        raise ValueError(f"Resource '{entry['name']}' has unknown identity '{identity}'")
    return GCPResource(
        name=entry["name"],
        type=entry["type"],
        args=dict(entry.get("args") or {}),
        custom_name=entry.get("custom_name"),
        identity=identity,
        depends_on=list(entry.get("depends_on") or []),
    )


def duration_seconds(value: str) -> float:
    """Convert a Go-style duration such as ``1m30s`` or ``1.5m`` to seconds."""
    if not DURATION_PATTERN.match(value or ""):
        raise ValueError(
            f"Invalid duration '{value}': expected e.g. '30s', '500ms', '1.5m', '1m30s'"
        )
    return sum(float(number) * DURATION_UNITS[unit]
               for number, unit in DURATION_PART_PATTERN.findall(value))


def required_apis(config: Config) -> List[str]:
    return sorted(set(BASE_APIS) | set(config.apis))


def api_resource_key(api: str) -> str:
    return f"api-{api.split('.', 1)[0]}"


def load_config(file_path: str) -> Dict[str, Any]:
    """Load YAML configuration from the given file path.

    Required keys are checked by ``Config.from_dict``.
    """
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file)

    if not isinstance(config_data, dict):
        raise ValueError(f"Configuration file '{file_path}' must contain a mapping")

    return config_data
