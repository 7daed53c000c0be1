import inspect

import pulumi
import pulumi_gcp as gcp
import pytest

from bootstrap_config import Config
from gcpresources import (
    DeclaredResourceBuilder,
    apply_common_parameters,
    get_lookup_params,
    resolve_value,
    to_snake_case,
)


class FakeResource:
    id = "fake-id"
    name = "fake-name"


def _config(config_data: dict, resources: list) -> Config:
    config_data["labels"] = {"team": "platform"}
    config_data["gcp_resources"] = resources
    return Config.from_dict(config_data)


def test_to_snake_case() -> None:
    assert to_snake_case("RepositoryIamMember") == "repository_iam_member"
    assert to_snake_case("Bucket") == "bucket"


def test_resolve_value_refs_nested() -> None:
    resources = {"bucket": FakeResource()}

    resolved = resolve_value(
        {"plain": "value", "ids": ["ref:bucket", {"name": "ref:bucket.name"}], "count": 3},
        resources,
    )

    assert resolved == {"plain": "value", "ids": ["fake-id", {"name": "fake-name"}], "count": 3}


def test_resolve_value_unknown_reference() -> None:
    with pytest.raises(ValueError) as excinfo:
        resolve_value("ref:missing", {})

    assert "missing" in str(excinfo.value)


def test_resolve_value_unknown_attribute() -> None:
    with pytest.raises(ValueError) as excinfo:
        resolve_value("ref:bucket.nothing", {"bucket": FakeResource()})

    assert "nothing" in str(excinfo.value)


def test_get_lookup_params_accepts_both_spellings() -> None:
    params = get_lookup_params({"repository_id", "location"}, {"repository_id": "images", "location": "us"})

    assert params == {"repository_id": "images", "location": "us"}


def test_apply_common_parameters(config_data: dict) -> None:
    config = _config(config_data, [])
    sig = inspect.signature(gcp.storage.Bucket._internal_init)

    resolved = apply_common_parameters(config, {"location": "US", "region": "us-east1"}, sig)

    assert resolved["labels"] == {"team": "platform"}
    assert resolved["project"] == "test-project"
    assert "region" not in resolved


def test_apply_common_parameters_keeps_explicit_values(config_data: dict) -> None:
    config = _config(config_data, [])
    sig = inspect.signature(gcp.storage.Bucket._internal_init)

    resolved = apply_common_parameters(config, {"labels": {"a": "b"}, "project": "elsewhere"}, sig)

    assert resolved["labels"] == {"a": "b"}
    assert resolved["project"] == "elsewhere"


def _run(builder: DeclaredResourceBuilder, provider_name: str = "admin") -> None:
    @pulumi.runtime.test
    def run():
        builder.admin_provider = gcp.Provider(provider_name, project="test-project")
        builder.build()
        return builder.admin_provider.id

    run()


def test_declared_resources_created_with_identity(mocks, config_data: dict) -> None:
    config = _config(config_data, [
        {"name": "bucket", "type": "storage.Bucket", "args": {"location": "US"}},
        {"name": "logs", "type": "storage.Bucket", "identity": "seed", "custom_name": "seed-logs",
         "depends_on": ["bucket"], "args": {"location": "US"}},
    ])
    resources = {}
    builder = DeclaredResourceBuilder(config, resources, lambda name: f"test-{name}")

    _run(builder)

    buckets = {r.name: r for r in mocks.registered if r.typ == "gcp:storage/bucket:Bucket"}
    assert set(buckets) == {"test-bucket", "seed-logs"}
    assert "pulumi:providers:gcp" in buckets["test-bucket"].provider
    assert not buckets["seed-logs"].provider
    assert buckets["test-bucket"].inputs["labels"] == {"team": "platform"}
    assert set(resources) == {"bucket", "logs"}


def test_unknown_type_is_skipped(mocks, config_data: dict) -> None:
    config = _config(config_data, [
        {"name": "nothing", "type": "nosuchmodule.Thing"},
        {"name": "nothing-else", "type": "storage.NoSuchClass"},
    ])
    resources = {}
    builder = DeclaredResourceBuilder(config, resources, lambda name: name)

    _run(builder, provider_name="admin-skip")

    assert resources == {}


def test_unknown_dependency_raises(config_data: dict) -> None:
    config = _config(config_data, [
        {"name": "bucket", "type": "storage.Bucket", "depends_on": ["ghost"], "args": {"location": "US"}},
    ])
    builder = DeclaredResourceBuilder(config, {}, lambda name: name)

    with pytest.raises(ValueError) as excinfo:
        builder.build_one(config.gcp_resources[0])

    assert "ghost" in str(excinfo.value)


def test_secret_value_reads_stack_config(mocks) -> None:
    pulumi.runtime.set_config("gcp-project-bootstrap:db-password", "hunter2")

    @pulumi.runtime.test
    def run():
        resolved = resolve_value({"settings": {"password": "secret:db-password"}}, {})
        password = resolved["settings"]["password"]
        assert isinstance(password, pulumi.Output)

        def check(value):
            assert value == "hunter2"

        return password.apply(check)

    run()


def test_missing_secret_raises() -> None:
    with pytest.raises(pulumi.ConfigMissingError):
        resolve_value("secret:not-configured", {})


def test_existing_resource_is_looked_up(mocks, config_data: dict) -> None:
    config = _config(config_data, [
        {"name": "shared", "type": "storage.Bucket", "identity": "seed",
         "args": {"existing": True, "name": "shared-bucket", "location": "US"}},
    ])
    resources = {}
    builder = DeclaredResourceBuilder(config, resources, lambda name: f"test-{name}")

    _run(builder, provider_name="admin-lookup")

    lookups = [c for c in mocks.calls if c.token == "gcp:storage/getBucket:getBucket"]
    assert [c.args["name"] for c in lookups] == ["shared-bucket"]
    assert not [r for r in mocks.registered if r.typ == "gcp:storage/bucket:Bucket"]
    assert isinstance(resources["shared"], pulumi.Output)


def test_failed_lookup_falls_back_to_creation(mocks, monkeypatch, config_data: dict) -> None:
    def failing_get_bucket(name=None, project=None, opts=None):
        raise Exception(f"bucket {name} not found")

    monkeypatch.delattr(gcp.storage, "get_bucket_output")
    monkeypatch.setattr(gcp.storage, "get_bucket", failing_get_bucket)
    config = _config(config_data, [
        {"name": "shared", "type": "storage.Bucket", "identity": "seed",
         "args": {"existing": True, "name": "shared-bucket", "location": "US"}},
    ])
    resources = {}
    builder = DeclaredResourceBuilder(config, resources, lambda name: f"test-{name}")

    _run(builder, provider_name="admin-fallback")

    (bucket,) = [r for r in mocks.registered if r.typ == "gcp:storage/bucket:Bucket"]
    assert bucket.name == "test-shared"
    assert bucket.inputs["name"] == "shared-bucket"
    assert "existing" not in bucket.inputs
    assert isinstance(resources["shared"], gcp.storage.Bucket)
