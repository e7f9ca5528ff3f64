from dataclasses import replace
from datetime import timedelta
from unittest.mock import Mock

import pytest
from eth_account import Account

from siwe_auth.core.errors import ErrorKind, RepositoryError, Result
from siwe_auth.services.auth_flow import (
    AuthOrchestrator,
    AuthState,
    InvalidTransition,
    TERMINAL_STATES,
    check_transition,
)
from siwe_auth.services.email_verification import CONFIRM_PATH, EmailVerifier
from siwe_auth.services.identity import AccountInput
from siwe_auth.services.name_resolver import NameResolver
from siwe_auth.services.nonce_store import MemoryNonceStore

from conftest import NOW, build_message, sign


@pytest.fixture
def store():
    return MemoryNonceStore(ttl=timedelta(minutes=5), clock=lambda: NOW)


@pytest.fixture
def mailer():
    return Mock()


@pytest.fixture
def make_orchestrator(auth_config, store, identities, mailer):
    def factory(name_resolver=None, **policy):
        return AuthOrchestrator(
            config=replace(auth_config, **policy),
            nonce_store=store,
            identities=identities,
            name_resolver=name_resolver,
            email_verifier=EmailVerifier("test-secret", clock=lambda: NOW),
            mailer=mailer,
            clock=lambda: NOW,
        )

    return factory


@pytest.fixture
def signed(wallet, store):
    """Sign a fresh message for `wallet`; returns (text, signature)"""

    def factory(**kwargs):
        nonce = kwargs.pop("nonce", None) or store.issue().value
        kwargs.setdefault("issued_at", NOW)
        text = build_message(wallet.address, nonce, **kwargs)
        return text, sign(wallet, text)

    return factory


def fake_resolver(claim=None, reverse=None):
    resolver = Mock(spec=NameResolver)
    resolver.enabled = True
    resolver.validate_claim.return_value = claim or Result.failure(ErrorKind.NAME_RESOLUTION_FAILED)
    resolver.resolve_reverse.return_value = reverse or Result.failure(ErrorKind.NAME_RESOLUTION_FAILED)
    return resolver


class TestEndToEnd:
    def test_sign_in_then_replay(self, wallet, identities, make_orchestrator):
        store = MemoryNonceStore(token_factory=lambda: "n1", clock=lambda: NOW)
        orchestrator = make_orchestrator()
        orchestrator.nonce_store = store
        assert store.issue().value == "n1"

        text = build_message(wallet.address, "n1", NOW)
        signature = sign(wallet, text)

        outcome = orchestrator.verify(text, signature, wallet.address)
        assert outcome.state == AuthState.AUTHENTICATED
        address = wallet.address.lower()
        assert outcome.identity.normalized_address == address
        assert outcome.identity.display_name == f"0x{address[2:6]}...{address[-4:]}"
        assert outcome.identity.last_login == NOW
        assert identities.find_by_address(address) is not None

        replay = orchestrator.verify(text, signature, wallet.address)
        assert replay.state == AuthState.REJECTED
        assert replay.error == ErrorKind.NONCE_INVALID

    def test_returning_user_keeps_account(self, wallet, signed, make_orchestrator):
        orchestrator = make_orchestrator()
        first = orchestrator.verify(*signed(), wallet.address)
        second = orchestrator.verify(*signed(), wallet.address)
        assert second.state == AuthState.AUTHENTICATED
        assert second.identity.id == first.identity.id


class TestRejections:
    def test_parse_error(self, wallet, make_orchestrator):
        outcome = make_orchestrator().verify("not a message", "0x00", wallet.address)
        assert outcome.state == AuthState.REJECTED
        assert outcome.error == ErrorKind.PARSE_ERROR

    def test_bad_signature_leaves_nonce_unused(self, wallet, store, make_orchestrator):
        nonce = store.issue().value
        text = build_message(wallet.address, nonce, NOW)
        forged = sign(Account.create(), text)
        outcome = make_orchestrator().verify(text, forged, wallet.address)
        assert outcome.error == ErrorKind.SIGNATURE_INVALID
        assert store.consume(nonce).ok

    def test_message_address_must_be_signer(self, wallet, store, make_orchestrator):
        other = Account.create()
        text = build_message(other.address, store.issue().value, NOW)
        outcome = make_orchestrator().verify(text, sign(wallet, text), wallet.address)
        assert outcome.error == ErrorKind.SIGNATURE_INVALID

    def test_too_old(self, wallet, signed, make_orchestrator):
        outcome = make_orchestrator().verify(*signed(issued_at=NOW - timedelta(minutes=6)), wallet.address)
        assert outcome.error == ErrorKind.MESSAGE_TOO_OLD

    def test_issued_in_future(self, wallet, signed, make_orchestrator):
        outcome = make_orchestrator().verify(*signed(issued_at=NOW + timedelta(minutes=1)), wallet.address)
        assert outcome.error == ErrorKind.ISSUED_IN_FUTURE

    def test_expired(self, wallet, signed, make_orchestrator):
        text, signature = signed(issued_at=NOW - timedelta(minutes=1), expiration_time=NOW - timedelta(seconds=1))
        assert make_orchestrator().verify(text, signature, wallet.address).error == ErrorKind.MESSAGE_EXPIRED

    def test_unknown_nonce(self, wallet, signed, make_orchestrator):
        outcome = make_orchestrator().verify(*signed(nonce="neverissued"), wallet.address)
        assert outcome.error == ErrorKind.NONCE_INVALID

    def test_domain_mismatch(self, wallet, signed, make_orchestrator):
        outcome = make_orchestrator().verify(*signed(domain="evil.com"), wallet.address)
        assert outcome.error == ErrorKind.DOMAIN_MISMATCH

    def test_no_account_created_on_rejection(self, wallet, signed, identities, make_orchestrator):
        make_orchestrator().verify(*signed(domain="evil.com"), wallet.address)
        assert identities.find_by_address(wallet.address) is None


class TestPolicy:
    def test_needs_email(self, wallet, signed, make_orchestrator):
        outcome = make_orchestrator(require_email_verification=True).verify(*signed(), wallet.address)
        assert outcome.state == AuthState.NEEDS_EMAIL
        assert outcome.identity.id is not None
        assert outcome.identity.last_login is None

    def test_email_comes_before_username(self, wallet, signed, make_orchestrator):
        orchestrator = make_orchestrator(require_email_verification=True, require_username=True)
        assert orchestrator.verify(*signed(), wallet.address).state == AuthState.NEEDS_EMAIL

    def test_needs_username(self, wallet, signed, make_orchestrator):
        outcome = make_orchestrator(require_username=True).verify(*signed(), wallet.address)
        assert outcome.state == AuthState.NEEDS_USERNAME

    def test_custom_name_skips_username_step(self, wallet, signed, identities, make_orchestrator):
        identities.find_or_create(wallet.address, AccountInput(preferred_username="alice"))
        outcome = make_orchestrator(require_username=True).verify(*signed(), wallet.address)
        assert outcome.state == AuthState.AUTHENTICATED

    def test_email_then_username_steps(self, wallet, signed, mailer, make_orchestrator):
        orchestrator = make_orchestrator(require_email_verification=True, require_username=True)
        outcome = orchestrator.verify(*signed(), wallet.address)
        account_id = outcome.identity.id

        assert orchestrator.request_email(account_id, "alice@example.com").ok
        email, link = mailer.send.call_args[0]
        assert email == "alice@example.com"
        user_id, timestamp, link_hash = link[len(CONFIRM_PATH) + 1:].split("/")

        confirmed = orchestrator.confirm_email(int(user_id), int(timestamp), link_hash)
        assert confirmed.state == AuthState.NEEDS_USERNAME
        assert confirmed.identity.email == "alice@example.com"

        done = orchestrator.complete_username(account_id, "alice")
        assert done.state == AuthState.AUTHENTICATED
        assert done.identity.display_name == "alice"

    def test_bad_link_is_rejected(self, wallet, signed, make_orchestrator):
        orchestrator = make_orchestrator(require_email_verification=True)
        account_id = orchestrator.verify(*signed(), wallet.address).identity.id
        orchestrator.request_email(account_id, "alice@example.com")
        outcome = orchestrator.confirm_email(account_id, int(NOW.timestamp()), "bogus")
        assert outcome.state == AuthState.REJECTED
        assert outcome.error == ErrorKind.LINK_INVALID

    def test_mailer_failure_is_internal(self, wallet, signed, mailer, make_orchestrator):
        orchestrator = make_orchestrator(require_email_verification=True)
        account_id = orchestrator.verify(*signed(), wallet.address).identity.id
        mailer.send.side_effect = ConnectionError("smtp down")
        result = orchestrator.request_email(account_id, "alice@example.com")
        assert not result.ok
        assert result.error == ErrorKind.INTERNAL

    def test_email_step_without_mailer_is_internal(self, wallet, signed, make_orchestrator):
        orchestrator = make_orchestrator(require_email_verification=True)
        account_id = orchestrator.verify(*signed(), wallet.address).identity.id
        orchestrator.mailer = None
        assert orchestrator.request_email(account_id, "alice@example.com").error == ErrorKind.INTERNAL

    def test_username_taken(self, wallet, signed, identities, make_orchestrator):
        identities.find_or_create(Account.create().address, AccountInput(preferred_username="alice"))
        orchestrator = make_orchestrator(require_username=True)
        account_id = orchestrator.verify(*signed(), wallet.address).identity.id
        outcome = orchestrator.complete_username(account_id, "alice")
        assert outcome.state == AuthState.REJECTED
        assert outcome.error == ErrorKind.USERNAME_TAKEN


class TestNames:
    def test_verified_claim_becomes_display_name(self, wallet, signed, make_orchestrator):
        resolver = fake_resolver(claim=Result.success("alice.eth"))
        orchestrator = make_orchestrator(name_resolver=resolver, enable_name_validation=True)
        outcome = orchestrator.verify(*signed(resources=["name:alice.eth"]), wallet.address)
        assert outcome.state == AuthState.AUTHENTICATED
        assert outcome.identity.display_name == "alice.eth"
        resolver.validate_claim.assert_called_once_with(wallet.address.lower(), "alice.eth")
        resolver.resolve_reverse.assert_not_called()

    def test_claim_mismatch_is_rejected(self, wallet, signed, make_orchestrator):
        resolver = fake_resolver(claim=Result.failure(ErrorKind.NAME_MISMATCH))
        orchestrator = make_orchestrator(name_resolver=resolver, enable_name_validation=True)
        outcome = orchestrator.verify(*signed(resources=["name:alice.eth"]), wallet.address)
        assert outcome.error == ErrorKind.NAME_MISMATCH

    def test_claim_ignored_when_validation_disabled(self, wallet, signed, make_orchestrator):
        resolver = fake_resolver(claim=Result.failure(ErrorKind.NAME_MISMATCH))
        outcome = make_orchestrator(name_resolver=resolver).verify(
            *signed(resources=["name:alice.eth"]), wallet.address
        )
        assert outcome.state == AuthState.AUTHENTICATED
        resolver.validate_claim.assert_not_called()

    def test_reverse_name_replaces_generated_name(self, wallet, signed, identities, make_orchestrator):
        identities.find_or_create(wallet.address)
        resolver = fake_resolver(reverse=Result.success("alice.eth"))
        orchestrator = make_orchestrator(name_resolver=resolver, enable_name_validation=True)
        outcome = orchestrator.verify(*signed(), wallet.address)
        assert outcome.identity.display_name == "alice.eth"
        assert outcome.name_suggestion is None

    def test_reverse_name_is_only_suggested_for_custom_name(self, wallet, signed, identities, make_orchestrator):
        identities.find_or_create(wallet.address, AccountInput(preferred_username="alice"))
        resolver = fake_resolver(reverse=Result.success("alice.eth"))
        orchestrator = make_orchestrator(name_resolver=resolver, enable_name_validation=True)
        outcome = orchestrator.verify(*signed(), wallet.address)
        assert outcome.identity.display_name == "alice"
        assert outcome.name_suggestion == "alice.eth"

    def test_reverse_lookup_can_be_disabled(self, wallet, signed, make_orchestrator):
        resolver = fake_resolver(reverse=Result.success("alice.eth"))
        orchestrator = make_orchestrator(
            name_resolver=resolver, enable_name_validation=True, enable_reverse_name_lookup=False
        )
        outcome = orchestrator.verify(*signed(), wallet.address)
        assert outcome.identity.display_name != "alice.eth"
        resolver.resolve_reverse.assert_not_called()


class TestInternalErrors:
    def test_repository_failure_is_internal(self, wallet, signed, store, make_orchestrator):
        orchestrator = make_orchestrator()
        orchestrator.identities = Mock()
        orchestrator.identities.find_or_create.side_effect = RepositoryError("database down")
        outcome = orchestrator.verify(*signed(), wallet.address)
        assert outcome.state == AuthState.INTERNAL_ERROR
        assert outcome.error == ErrorKind.INTERNAL

    def test_nonce_store_failure_is_internal(self, wallet, signed, make_orchestrator):
        orchestrator = make_orchestrator()
        text, signature = signed()
        orchestrator.nonce_store = Mock()
        orchestrator.nonce_store.consume.side_effect = RepositoryError("redis down")
        assert orchestrator.verify(text, signature, wallet.address).state == AuthState.INTERNAL_ERROR


class TestTransitions:
    def test_allowed(self):
        assert check_transition(AuthState.VERIFIED, AuthState.NEEDS_EMAIL) == AuthState.NEEDS_EMAIL

    @pytest.mark.parametrize(
        "current, target",
        [
            (AuthState.AWAITING_VERIFICATION, AuthState.AUTHENTICATED),
            (AuthState.NEEDS_USERNAME, AuthState.NEEDS_EMAIL),
            (AuthState.AUTHENTICATED, AuthState.REJECTED),
            (AuthState.REJECTED, AuthState.VERIFIED),
        ],
    )
    def test_forbidden(self, current, target):
        with pytest.raises(InvalidTransition):
            check_transition(current, target)

    @pytest.mark.parametrize("final", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_final_states_have_no_exits(self, final):
        for target in AuthState:
            with pytest.raises(InvalidTransition):
                check_transition(final, target)
