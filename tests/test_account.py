"""Tests for AccountResolver."""

from unittest.mock import patch

import pytest

from acme_certmanager import exceptions, utils
from acme_certmanager.account import AccountResolver
from acme_certmanager.records import Account


class TestGetOrCreate:
    """Tests for AccountResolver.get_or_create."""

    def test_creates_account(self, resolver, accounts, key_store, client_factory):
        """Test that a new email creates one record and one key blob."""
        account = resolver.get_or_create("admin@example.com")

        assert account.email == "admin@example.com"
        assert account.private_key_ref == account.id
        assert key_store.saved == [account.id]
        assert accounts.find_by_email("admin@example.com") == account
        assert account.is_resolved
        assert account.registration == "registration:admin@example.com"
        assert client_factory.call_names() == ["register"]

    def test_returns_same_account(self, resolver):
        """Test that a second call resolves the same identifier and key reference."""
        first = resolver.get_or_create("admin@example.com")
        second = resolver.get_or_create("admin@example.com")

        assert second.id == first.id
        assert second.private_key_ref == first.private_key_ref
        assert utils.private_key_to_pem(second.private_key) == utils.private_key_to_pem(first.private_key)

    def test_existing_account_performs_no_writes(self, resolver, accounts, key_store):
        """Test that loading an existing account writes nothing."""
        resolver.get_or_create("admin@example.com")
        key_store.saved.clear()

        with patch.object(accounts, "create", wraps=accounts.create) as create:
            resolver.get_or_create("admin@example.com")

        create.assert_not_called()
        assert key_store.saved == []

    def test_key_is_stored_before_record(self, resolver, accounts, key_store):
        """Test that the record is only created once its key is readable."""
        seen = []

        def create(account):
            seen.append(key_store.exists(account.private_key_ref))

        with patch.object(accounts, "create", side_effect=create):
            resolver.get_or_create("admin@example.com")

        assert seen == [True]

    @pytest.mark.parametrize("email", ["not-an-email", "", "admin@", "@example.com", "a b@example.com"])
    def test_invalid_email(self, resolver, accounts, key_store, client_factory, email):
        """Test that malformed addresses fail without writes."""
        with pytest.raises(exceptions.InvalidEmail) as exc_info:
            resolver.get_or_create(email)

        assert exc_info.value.email == email
        assert key_store.saved == []
        assert client_factory.calls == []
        assert accounts.find_by_email(email) is None

    def test_missing_key_is_unavailable(self, resolver, accounts):
        """Test that a record without a stored key is not silently repaired."""
        accounts.create(Account(id="acct-1", email="admin@example.com", private_key_ref="acct-1"))

        with pytest.raises(exceptions.KeyMaterialUnavailable) as exc_info:
            resolver.get_or_create("admin@example.com")

        assert exc_info.value.account_id == "acct-1"
        assert isinstance(exc_info.value.cause, exceptions.KeyNotFoundError)

    def test_undecodable_key_is_unavailable(self, resolver, accounts, key_store):
        """Test that garbage key bytes are reported as unavailable."""
        accounts.create(Account(id="acct-1", email="admin@example.com", private_key_ref="acct-1"))
        key_store.save("acct-1", b"not a pem")

        with pytest.raises(exceptions.KeyMaterialUnavailable):
            resolver.get_or_create("admin@example.com")

    def test_key_generation_failure(self, resolver, accounts, key_store):
        """Test that a key generation error is wrapped and nothing is written."""
        with patch("acme_certmanager.account.generate_private_key", side_effect=ValueError("no entropy")):
            with pytest.raises(exceptions.KeyGenerationFailure) as exc_info:
                resolver.get_or_create("admin@example.com")

        assert isinstance(exc_info.value.cause, ValueError)
        assert key_store.saved == []
        assert accounts.find_by_email("admin@example.com") is None

    def test_lost_race_loads_winner(self, resolver, accounts, key_store, account_key):
        """Test that a duplicate create falls back to the winner's account."""
        winner = Account(id="winner", email="admin@example.com", private_key_ref="winner")
        key_store.save_private_key("winner", account_key)

        real_find = accounts.find_by_email
        lookups = []

        def find_by_email(email):
            lookups.append(email)
            # The first lookup happens before the winner commits
            if len(lookups) == 1:
                accounts.create(winner)
                return None
            return real_find(email)

        with patch.object(accounts, "find_by_email", side_effect=find_by_email):
            account = resolver.get_or_create("admin@example.com")

        assert account.id == "winner"
        assert account.is_resolved
        assert len(lookups) == 2

    def test_register_disabled(self, accounts, key_store, client_factory):
        """Test that registration can be deferred to the first order."""
        resolver = AccountResolver(accounts, key_store, client_factory, register=False)

        account = resolver.get_or_create("admin@example.com")

        assert account.client is not None
        assert account.registration is None
        assert client_factory.calls == []


class TestGet:
    """Tests for AccountResolver.get."""

    def test_get_by_id(self, resolver):
        """Test loading an account by identifier."""
        created = resolver.get_or_create("admin@example.com")

        loaded = resolver.get(created.id)

        assert loaded.id == created.id
        assert loaded.is_resolved

    def test_get_unknown(self, resolver):
        """Test that an unknown identifier raises AccountNotFound."""
        with pytest.raises(exceptions.AccountNotFound) as exc_info:
            resolver.get("missing")

        assert exc_info.value.account_id == "missing"
