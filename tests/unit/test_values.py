"""Tests for configuration values: secrets, references and fingerprints."""

import pytest

from driftless.exceptions import SecretResolutionError
from driftless.models import ResourceId
from driftless.values import (
    REDACTED,
    Interpolation,
    Reference,
    Sealed,
    Secret,
    contains_sealed,
    fingerprint,
    iter_references,
    property_hashes,
    redact,
    resolve,
    seal,
    substitute,
    unseal,
)

VPC = ResourceId("aws.ec2.Vpc", "main")


class TestSecret:
    """Tests for secret wrappers."""

    def test_str_and_repr_are_redacted(self):
        """Neither str() nor repr() exposes the plaintext."""
        secret = Secret("hunter2")
        assert str(secret) == REDACTED
        assert "hunter2" not in repr(secret)
        assert secret.reveal() == "hunter2"

    def test_sealed_equals_secret_with_same_digest(self):
        """A sealed value loaded from state compares equal to its secret."""
        secret = Secret("hunter2")
        assert Sealed(secret.digest) == secret
        assert hash(Sealed(secret.digest)) == hash(secret)

    def test_sealed_cannot_reveal(self):
        """Sealed values have no plaintext."""
        with pytest.raises(SecretResolutionError):
            Sealed("sha256:abc").reveal()

    def test_seal_and_unseal(self):
        """Secrets are stored as digests and come back sealed."""
        sealed = seal({"password": Secret("hunter2"), "port": 5432})
        assert "hunter2" not in str(sealed)
        restored = unseal(sealed)
        assert isinstance(restored["password"], Sealed)
        assert restored["port"] == 5432
        assert contains_sealed(restored)
        assert not contains_sealed({"port": 5432})


class TestReference:
    """Tests for output references."""

    def test_str(self):
        ref = Reference(VPC, ("id",))
        assert str(ref) == "${aws.ec2.Vpc/main.id}"

    def test_lookup_nested_path_with_index(self):
        """List segments are indices."""
        ref = Reference(VPC, ("subnets", "1", "id"))
        outputs = {"subnets": [{"id": "a"}, {"id": "b"}]}
        assert ref.lookup(outputs) == "b"

    def test_lookup_missing_path_raises(self):
        with pytest.raises(KeyError):
            Reference(VPC, ("missing",)).lookup({"id": "vpc-1"})
        with pytest.raises(KeyError):
            Reference(VPC, ("subnets", "5")).lookup({"subnets": []})

    def test_iter_references_walks_everything(self):
        """References inside lists, mappings and interpolations are found."""
        a = Reference(VPC, ("id",))
        b = Reference(ResourceId("aws.ec2.Subnet", "a"), ("id",))
        config = {"vpc": a, "tags": [{"subnet": Interpolation(("subnet-", b))}]}
        assert list(iter_references(config)) == [a, b]


class TestResolve:
    """Tests for reference resolution."""

    def test_resolve_replaces_references(self):
        ref = Reference(VPC, ("id",))
        resolved = resolve({"vpc_id": ref, "tags": [ref]}, lambda r: "vpc-1")
        assert resolved == {"vpc_id": "vpc-1", "tags": ["vpc-1"]}

    def test_interpolation_joins_parts(self):
        ref = Reference(VPC, ("port",))
        value = Interpolation(("db:", ref))
        assert resolve(value, lambda r: 5432) == "db:5432"

    def test_interpolation_with_secret_stays_secret(self):
        """Mixing a secret into a string yields a secret."""
        value = Interpolation(("postgres://app:", Secret("pw"), "@db"))
        resolved = resolve(value, lambda r: None)
        assert isinstance(resolved, Secret)
        assert resolved.reveal() == "postgres://app:pw@db"

    def test_interpolation_with_sealed_part_stays_sealed(self):
        value = Interpolation(("postgres://app:", Sealed("sha256:x"), "@db"))
        assert isinstance(resolve(value, lambda r: None), Sealed)

    def test_redact(self):
        redacted = redact({"password": Secret("pw"), "ref": Reference(VPC, ("id",))})
        assert redacted == {"password": REDACTED, "ref": "${aws.ec2.Vpc/main.id}"}


class TestFingerprint:
    """Tests for configuration hashing."""

    def test_key_order_does_not_matter(self):
        assert fingerprint({"a": 1, "b": 2}) == fingerprint({"b": 2, "a": 1})

    def test_different_values_differ(self):
        assert fingerprint({"a": 1}) != fingerprint({"a": 2})

    def test_secret_and_sealed_hash_the_same(self):
        """State reloads do not change fingerprints."""
        secret = Secret("pw")
        assert fingerprint({"p": secret}) == fingerprint({"p": Sealed(secret.digest)})

    def test_substitute_hash_is_stable_across_sealing(self):
        """Interpolated secrets hash the same whether plaintext or sealed."""
        ref = Reference(VPC, ("password",))
        value = {"url": Interpolation(("postgres://app:", ref, "@db"))}
        secret = Secret("pw")
        live = substitute(value, lambda r: secret)
        reloaded = substitute(value, lambda r: Sealed(secret.digest))
        assert fingerprint(live) == fingerprint(reloaded)

    def test_property_hashes_per_property(self):
        hashes = property_hashes({"cidr": "10.0.0.0/16", "tags": {"env": "review"}})
        assert set(hashes) == {"cidr", "tags"}
        assert all(h.startswith("sha256:") for h in hashes.values())
