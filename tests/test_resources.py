"""Tests for the resource model."""

import pytest

from converge.resources.models import (
    EnvOverride,
    GeneratePolicy,
    ResourceRef,
    Secret,
    canonicalize,
    fingerprint,
    resolve_overrides,
    resolve_references,
)
from converge.utils.errors import ValidationError

from conftest import ref, res


class TestResourceRef:
    """Tests for ResourceRef parsing."""

    def test_parse_without_attribute(self) -> None:
        parsed = ResourceRef.parse("database_instance.main")
        assert parsed.key == "database_instance.main"
        assert parsed.attribute is None
        assert str(parsed) == "database_instance.main"

    def test_parse_dotted_attribute(self) -> None:
        """Everything after kind.name is the attribute path."""
        parsed = ResourceRef.parse("secret.db.versions.2")
        assert parsed.key == "secret.db"
        assert parsed.attribute == "versions.2"

    @pytest.mark.parametrize("text", ["", "database", "database.", ".main"])
    def test_parse_invalid(self, text: str) -> None:
        with pytest.raises(ValidationError, match="Invalid reference"):
            ResourceRef.parse(text)


class TestEnvOverride:
    """Tests for environment overrides."""

    def test_resolves_from_environment(self) -> None:
        assert EnvOverride("IMAGE", default="a").resolve({"IMAGE": "b"}) == "b"

    def test_falls_back_to_default(self) -> None:
        assert EnvOverride("IMAGE", default=None).resolve({}) is None

    def test_missing_without_default(self) -> None:
        with pytest.raises(ValidationError, match="IMAGE"):
            EnvOverride("IMAGE").resolve({})

    def test_resolve_overrides_nested(self) -> None:
        value = {"env": [EnvOverride("A"), {"b": EnvOverride("B", default=2)}]}
        assert resolve_overrides(value, {"A": "1"}) == {"env": ["1", {"b": 2}]}


class TestResource:
    """Tests for Resource validation and dependency scanning."""

    def test_key(self) -> None:
        assert res("app", "web").key == "app.web"

    def test_dependencies_found_at_any_depth(self) -> None:
        resource = res(
            "app", "web",
            env={"DB": ref("database.main.host"), "list": [{"net": ref("network.vpc")}]},
        )
        assert resource.dependencies() == {"database.main", "network.vpc"}

    def test_depends_on_adds_ordering_only_edges(self) -> None:
        resource = res("app", "web", depends_on=["binding.access"])
        assert resource.dependencies() == {"binding.access"}
        assert resource.references() == []

    def test_validate_accepts_declared_references(self) -> None:
        resource = res("app", "web", db=ref("database.main"))
        resource.validate(["app.web", "database.main"])

    def test_validate_rejects_undeclared_reference(self) -> None:
        resource = res("app", "web", db=ref("database.missing"))
        with pytest.raises(ValidationError, match="undeclared resource 'database.missing'"):
            resource.validate(["app.web"])

    def test_validate_rejects_self_reference(self) -> None:
        resource = res("app", "web", me=ref("app.web.url"))
        with pytest.raises(ValidationError, match="references itself"):
            resource.validate(["app.web"])

    def test_validate_required_attributes(self) -> None:
        resource = res("app", "web", image="x")
        with pytest.raises(ValidationError, match="missing required attribute\\(s\\): port"):
            resource.validate(["app.web"], ("image", "port"))

    def test_validate_rejects_unsupported_values(self) -> None:
        resource = res("app", "web", handler=object())
        with pytest.raises(ValidationError, match="unsupported value"):
            resource.validate(["app.web"])

    def test_with_defaults_keeps_declared_values(self) -> None:
        resource = res("database", "main", deletion_protection=True)
        merged = resource.with_defaults({"deletion_protection": False, "backups": True})
        assert merged.attributes == {"deletion_protection": True, "backups": True}
        assert resource.attributes == {"deletion_protection": True}


class TestCanonicalForm:
    """Tests for canonicalization and fingerprints."""

    def test_references_are_tagged(self) -> None:
        assert canonicalize({"b": ref("app.web.url"), "a": 1}) == {"a": 1, "b": {"$ref": "app.web.url"}}

    def test_fingerprint_ignores_key_order(self) -> None:
        assert fingerprint({"a": 1, "b": [1, 2]}) == fingerprint({"b": [1, 2], "a": 1})
        assert fingerprint({"a": 1}) != fingerprint({"a": 2})

    def test_resolve_references_uses_lookup(self) -> None:
        values = {"app.web.url": "https://web"}
        resolved = resolve_references({"url": ref("app.web.url"), "n": 3}, lambda r: values[str(r)])
        assert resolved == {"url": "https://web", "n": 3}


class TestSecret:
    """Tests for the Secret resource."""

    def test_build_resource_returns_secret(self) -> None:
        assert isinstance(res("secret", "db", generate=True), Secret)

    def test_generate_true_uses_default_policy(self) -> None:
        assert res("secret", "db", generate=True).policy == GeneratePolicy()

    def test_policy_from_mapping(self) -> None:
        policy = res("secret", "db", generate={"length": 16, "special": False}).policy
        assert policy.length == 16
        assert policy.special is False

    def test_exactly_one_source_required(self) -> None:
        with pytest.raises(ValidationError, match="exactly one"):
            res("secret", "db").validate(["secret.db"])
        with pytest.raises(ValidationError, match="exactly one"):
            res("secret", "db", generate=True, value="x").validate(["secret.db"])

    def test_policy_too_short_for_classes(self) -> None:
        with pytest.raises(ValidationError):
            res("secret", "db", generate={"length": 2}).validate(["secret.db"])

    def test_policy_fingerprint_tracks_policy_not_other_attributes(self) -> None:
        a = res("secret", "db", generate={"length": 20}, labels={"team": "a"})
        b = res("secret", "db", generate={"length": 20}, labels={"team": "b"})
        c = res("secret", "db", generate={"length": 24})
        assert a.policy_fingerprint() == b.policy_fingerprint()
        assert a.policy_fingerprint() != c.policy_fingerprint()

    def test_supplied_value_fingerprint(self) -> None:
        a = res("secret", "api", value="one")
        b = res("secret", "api", value="two")
        assert a.policy_fingerprint().startswith("value:")
        assert a.policy_fingerprint() != b.policy_fingerprint()

    def test_referenced_value_fingerprinted_by_resolved_value(self) -> None:
        secret = res("secret", "conn", value=ref("database.main.tier"))
        small = secret.policy_fingerprint({"value": "small"})
        assert small == res("secret", "conn", value="small").policy_fingerprint()
        assert small != secret.policy_fingerprint({"value": "large"})
