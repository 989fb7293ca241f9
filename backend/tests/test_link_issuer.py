import pytest

from filevault.errors import ValidationError
from filevault.services.access_policy import digest
from filevault.services.cipher_engine import KEY_SIZE
from filevault.services.link_issuer import SecureLinkIssuer


@pytest.fixture
def issuer():
    return SecureLinkIssuer("https://vault.test/")


def test_tokens_are_unique_and_only_hashes_are_kept(issuer):
    links = [issuer.issue() for _ in range(200)]
    assert len({link.token for link in links}) == 200
    for link in links:
        assert len(link.token) >= 43
        assert link.token_hash == digest(link.token)
        assert link.token not in link.token_hash


def test_secret_decodes_to_its_key(issuer):
    secret = issuer.new_secret()
    assert len(secret.key) == KEY_SIZE
    assert issuer.key_from_secret(secret.secret) == secret.key
    assert secret.digest == digest(secret.secret)
    assert "=" not in secret.secret


def test_secrets_are_independent(issuer):
    assert issuer.new_secret().key != issuer.new_secret().key


@pytest.mark.parametrize("bad", ["short", "!!!!", "A" * 10])
def test_malformed_secret_rejected(issuer, bad):
    with pytest.raises(ValidationError):
        issuer.key_from_secret(bad)


def test_link_url(issuer):
    assert issuer.link_url("abc") == "https://vault.test/download/abc"
