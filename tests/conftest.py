"""
pytest setup: every test runs against Pulumi mocks so no engine or cloud
credentials are needed. The mocks record each registered resource.
"""

from __future__ import annotations

import pulumi
import pytest

PROJECT = "gcp-project-bootstrap"
STACK = "test"


class BootstrapMocks(pulumi.runtime.Mocks):
    def __init__(self) -> None:
        self.registered: list[pulumi.runtime.MockResourceArgs] = []
        self.calls: list[pulumi.runtime.MockCallArgs] = []
        # Resources whose name ends with one of these get an unknown id,
        # as during a preview before they exist.
        self.unknown_id_suffixes: set[str] = set()

    def new_resource(self, args: pulumi.runtime.MockResourceArgs):
        self.registered.append(args)
        outputs = dict(args.inputs)
        if args.typ == "gcp:serviceaccount/account:Account":
            project = args.inputs.get("project", "test-project")
            email = f"{args.inputs['accountId']}@{project}.iam.gserviceaccount.com"
            outputs.update(
                email=email,
                member=f"serviceAccount:{email}",
                name=f"projects/{project}/serviceAccounts/{email}",
            )
        if any(args.name.endswith(suffix) for suffix in self.unknown_id_suffixes):
            return ["", outputs]
        return [f"{args.name}_id", outputs]

    def call(self, args: pulumi.runtime.MockCallArgs):
        self.calls.append(args)
        if args.token == "gcp:serviceaccount/getAccountAccessToken:getAccountAccessToken":
            return {
                "id": args.args.get("targetServiceAccount"),
                "accessToken": "ya29.mock-token",
                "targetServiceAccount": args.args.get("targetServiceAccount"),
                "scopes": args.args.get("scopes"),
                "lifetime": args.args.get("lifetime"),
            }
        if args.token == "gcp:organizations/getClientOpenIdUserInfo:getClientOpenIdUserInfo":
            return {"id": "seed", "email": "seed@example.com"}
        if args.token == "gcp:storage/getBucket:getBucket":
            return {"id": args.args.get("name"), "name": args.args.get("name"), "location": "US"}
        return {}


MOCKS = BootstrapMocks()
pulumi.runtime.set_mocks(MOCKS, project=PROJECT, stack=STACK, preview=False)


@pytest.fixture
def mocks() -> BootstrapMocks:
    MOCKS.registered.clear()
    MOCKS.calls.clear()
    MOCKS.unknown_id_suffixes.clear()
    return MOCKS


@pytest.fixture
def preview_mocks(mocks: BootstrapMocks):
    pulumi.runtime.set_mocks(mocks, project=PROJECT, stack=STACK, preview=True)
    yield mocks
    mocks.unknown_id_suffixes.clear()
    pulumi.runtime.set_mocks(mocks, project=PROJECT, stack=STACK, preview=False)


@pytest.fixture
def config_data() -> dict:
    return {
        "team": "Platform",
        "service": "bootstrap",
        "environment": "dev",
        "region": "us-central1",
        "project": "test-project",
        "seed_member": "user:ops@example.com",
        "admin_service_account": {
            "account_id": "platform-admin",
            "roles": ["roles/iam.serviceAccountAdmin", "roles/container.admin"],
        },
        "node_service_accounts": [
            {"name": "gke-nodes", "account_id": "gke-nodes"},
        ],
    }
