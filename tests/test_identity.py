"""Tests for key derivation and validation."""

import pytest

from cloudsync import IdentityProvider, InvalidIdentityError, composite_key
from sync_models import Membership, Note, User


class TestIdentityOf:
    """Tests for deriving keys from objects."""

    def test_key_field(self):
        """A registered key field yields the field's value."""
        provider = IdentityProvider()
        user = User(user_id="user-42", name="Ada", age=36)

        assert provider.identity_of(user, "user_id") == "user-42"

    def test_non_string_key_is_rendered(self):
        """Integer key values are rendered as strings."""
        provider = IdentityProvider()
        membership = Membership(org_id="acme", user_id="7")
        membership.level = 3

        assert provider.identity_of(membership, "level") == "3"

    def test_composite_key(self):
        """Tuple key fields are joined with ':'."""
        provider = IdentityProvider()
        membership = Membership(org_id="acme", user_id="user-42")

        assert provider.identity_of(membership, ("org_id", "user_id")) == "acme:user-42"

    def test_sync_key_fallback(self):
        """Without a key field the object's sync_key() is used."""
        provider = IdentityProvider()

        assert provider.identity_of(Note("n-1", "hello")) == "n-1"

    def test_identity_is_stable(self):
        """The same object always yields the same key."""
        provider = IdentityProvider()
        user = User(user_id="user-42", name="Ada", age=36)

        assert provider.identity_of(user, "user_id") == provider.identity_of(user, "user_id")

    def test_no_key_source(self):
        """An object with neither key field nor sync_key() is rejected."""
        provider = IdentityProvider()

        with pytest.raises(InvalidIdentityError, match="no key field"):
            provider.identity_of(User(user_id="u", name="n", age=1))

    def test_missing_key_field(self):
        """A key field the object lacks is rejected."""
        provider = IdentityProvider()

        with pytest.raises(InvalidIdentityError, match="missing key field"):
            provider.identity_of(User(user_id="u", name="n", age=1), "email")

    def test_empty_key(self):
        """Empty and whitespace keys are rejected."""
        provider = IdentityProvider()

        with pytest.raises(InvalidIdentityError, match="empty"):
            provider.identity_of(User(user_id="", name="n", age=1), "user_id")
        with pytest.raises(InvalidIdentityError, match="empty"):
            provider.identity_of(User(user_id="   ", name="n", age=1), "user_id")

    def test_none_key(self):
        """A None key value is rejected."""
        provider = IdentityProvider()
        user = User(user_id=None, name="n", age=1)  # type: ignore[arg-type]

        with pytest.raises(InvalidIdentityError, match="None"):
            provider.identity_of(user, "user_id")

    def test_bool_key(self):
        """A bool key value is rejected rather than rendered as 'True'."""
        provider = IdentityProvider()
        user = User(user_id=True, name="n", age=1)  # type: ignore[arg-type]

        with pytest.raises(InvalidIdentityError, match="bool"):
            provider.identity_of(user, "user_id")

    def test_composite_part_with_separator(self):
        """Composite parts may not contain the separator."""
        provider = IdentityProvider()
        membership = Membership(org_id="acme:eu", user_id="user-42")

        with pytest.raises(InvalidIdentityError, match="':'"):
            provider.identity_of(membership, ("org_id", "user_id"))


class TestValidateKey:
    """Tests for the key grammar."""

    def test_forbidden_slash(self):
        """Slashes are forbidden for every store."""
        with pytest.raises(InvalidIdentityError, match="forbidden"):
            IdentityProvider().validate_key("a/b")

    def test_store_specific_chars(self):
        """Extra forbidden characters come from the store."""
        provider = IdentityProvider(forbidden_chars={"#"})

        assert IdentityProvider().validate_key("a#b") == "a#b"
        with pytest.raises(InvalidIdentityError):
            provider.validate_key("a#b")

    def test_non_string(self):
        """Keys must be strings."""
        with pytest.raises(InvalidIdentityError, match="string"):
            IdentityProvider().validate_key(42)


class TestCompositeKey:
    """Tests for the composite_key helper."""

    def test_joins_parts(self):
        assert composite_key("acme", "user-42") == "acme:user-42"

    def test_single_part(self):
        assert composite_key(7) == "7"

    def test_no_parts(self):
        with pytest.raises(InvalidIdentityError):
            composite_key()
