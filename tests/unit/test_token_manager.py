"""Tests for the security token lifecycle."""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from src.auth.tokens import (
    REJECTION_REASONS,
    TokenKind,
    TokenLifecycleManager,
    TokenStatus,
)
from src.persistence.exceptions import TokenStoreError
from src.persistence.models import SecurityToken, User
from src.persistence.token_store import SqlTokenStore, TokenStore


def _mark_verified(user):
    user.is_verified = True


class InterruptedStore(SqlTokenStore):
    """Runs ``between`` after the token was checked and before it is claimed."""

    def __init__(self, session, between):
        super().__init__(session)
        self.between = between

    def get_user(self, user_id):
        self.between()
        return super().get_user(user_id)


class TestIssueOrRefresh:
    """Token creation and overwrite."""

    def test_issue_creates_row(self, token_manager, alice, test_db):
        value = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)

        row = test_db.execute(
            select(SecurityToken).where(SecurityToken.token == value)
        ).scalar_one()
        assert row.user_id == alice.id
        assert row.kind == "email_verification"
        assert row.used is False

    def test_expiry_is_24_hours_ahead(self, token_manager, alice, wall_clock, test_db):
        value = token_manager.issue_or_refresh(alice, TokenKind.PASSWORD_RESET)
        row = SqlTokenStore(test_db).find_by_value(value)

        expiry = row.expiry_date.replace(tzinfo=None)
        assert expiry == (wall_clock.now + timedelta(hours=24)).replace(tzinfo=None)

    def test_refresh_overwrites_same_row(self, token_manager, alice, test_db):
        first = token_manager.issue_or_refresh(alice, TokenKind.PASSWORD_RESET)
        second = token_manager.issue_or_refresh(alice, TokenKind.PASSWORD_RESET)

        assert first != second
        assert token_manager.validate(first).status is TokenStatus.INVALID
        assert token_manager.validate(second).is_valid

        count = test_db.execute(
            select(func.count()).select_from(SecurityToken).where(
                SecurityToken.user_id == alice.id
            )
        ).scalar_one()
        assert count == 1

    def test_refresh_revives_used_token_row(self, token_manager, alice):
        first = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        token_manager.consume(first, TokenKind.EMAIL_VERIFICATION, _mark_verified)

        second = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        assert token_manager.validate(second).is_valid

    def test_one_token_per_kind(self, token_manager, alice, test_db):
        verify = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        reset = token_manager.issue_or_refresh(alice, TokenKind.PASSWORD_RESET)

        assert token_manager.validate(verify).is_valid
        assert token_manager.validate(reset).is_valid
        assert test_db.execute(select(func.count()).select_from(SecurityToken)).scalar_one() == 2

    def test_custom_ttl(self, test_db, alice, wall_clock):
        manager = TokenLifecycleManager(
            SqlTokenStore(test_db),
            clock=wall_clock,
            ttl={TokenKind.PASSWORD_RESET: timedelta(hours=1)},
        )
        value = manager.issue_or_refresh(alice, TokenKind.PASSWORD_RESET)

        wall_clock.advance(minutes=59)
        assert manager.validate(value).is_valid
        wall_clock.advance(minutes=1)
        assert manager.validate(value).status is TokenStatus.EXPIRED

    def test_from_settings(self, test_db):
        settings = MagicMock(verification_token_ttl_hours=48, reset_token_ttl_hours=2)
        manager = TokenLifecycleManager.from_settings(SqlTokenStore(test_db), settings)

        assert manager.ttl[TokenKind.EMAIL_VERIFICATION] == timedelta(hours=48)
        assert manager.ttl[TokenKind.PASSWORD_RESET] == timedelta(hours=2)


class TestValidate:
    """Validation outcomes and their precedence."""

    def test_fresh_token_is_valid(self, token_manager, alice):
        value = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        outcome = token_manager.validate(value)

        assert outcome.is_valid
        assert outcome.user_id == alice.id
        assert outcome.kind is TokenKind.EMAIL_VERIFICATION
        assert outcome.reason is None

    def test_unknown_token_is_invalid(self, token_manager):
        outcome = token_manager.validate("no-such-token")
        assert outcome.status is TokenStatus.INVALID
        assert "invalid" in outcome.reason

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_blank_token_is_invalid(self, token_manager, raw):
        assert token_manager.validate(raw, TokenKind.PASSWORD_RESET).status is TokenStatus.INVALID

    def test_surrounding_whitespace_is_ignored(self, token_manager, alice):
        value = token_manager.issue_or_refresh(alice, TokenKind.PASSWORD_RESET)
        assert token_manager.validate(f"  {value}\n").is_valid

    def test_wrong_kind_is_invalid(self, token_manager, alice):
        value = token_manager.issue_or_refresh(alice, TokenKind.PASSWORD_RESET)
        outcome = token_manager.validate(value, TokenKind.EMAIL_VERIFICATION)

        assert outcome.status is TokenStatus.INVALID
        assert outcome.reason == REJECTION_REASONS[TokenKind.EMAIL_VERIFICATION][TokenStatus.INVALID]

    def test_expired_one_second_ago(self, token_manager, alice, wall_clock):
        value = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        wall_clock.advance(hours=24, seconds=1)

        outcome = token_manager.validate(value)
        assert outcome.status is TokenStatus.EXPIRED
        assert "expired" in outcome.reason

    def test_expired_at_exact_expiry(self, token_manager, alice, wall_clock):
        value = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        wall_clock.advance(hours=24)
        assert token_manager.validate(value).status is TokenStatus.EXPIRED

    def test_valid_just_before_expiry(self, token_manager, alice, wall_clock):
        value = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        wall_clock.advance(hours=23, minutes=59, seconds=59)
        assert token_manager.validate(value).is_valid

    def test_used_takes_precedence_over_expired(self, token_manager, alice, wall_clock):
        value = token_manager.issue_or_refresh(alice, TokenKind.PASSWORD_RESET)
        token_manager.consume(value, TokenKind.PASSWORD_RESET, lambda user: None)
        wall_clock.advance(days=2)

        outcome = token_manager.validate(value)
        assert outcome.status is TokenStatus.ALREADY_USED
        assert outcome.reason == REJECTION_REASONS[TokenKind.PASSWORD_RESET][TokenStatus.ALREADY_USED]

    def test_reasons_are_distinct(self):
        for reasons in REJECTION_REASONS.values():
            assert len(set(reasons.values())) == 3


class TestConsume:
    """Single-use consumption."""

    def test_round_trip(self, token_manager, alice):
        value = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        assert token_manager.validate(value).is_valid

        outcome = token_manager.consume(value, TokenKind.EMAIL_VERIFICATION, _mark_verified)
        assert outcome.is_valid
        assert alice.is_verified is True

        assert token_manager.validate(value).status is TokenStatus.ALREADY_USED

    def test_second_consume_is_already_used(self, token_manager, alice):
        value = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        token_manager.consume(value, TokenKind.EMAIL_VERIFICATION, _mark_verified)

        action = MagicMock()
        outcome = token_manager.consume(value, TokenKind.EMAIL_VERIFICATION, action)

        assert outcome.status is TokenStatus.ALREADY_USED
        action.assert_not_called()
        assert alice.is_verified is True

    def test_expired_token_is_not_consumed(self, token_manager, alice, wall_clock):
        value = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        wall_clock.advance(days=1, seconds=1)

        action = MagicMock()
        outcome = token_manager.consume(value, TokenKind.EMAIL_VERIFICATION, action)

        assert outcome.status is TokenStatus.EXPIRED
        action.assert_not_called()

    def test_consume_wrong_kind_is_invalid(self, token_manager, alice):
        value = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        outcome = token_manager.consume(value, TokenKind.PASSWORD_RESET, MagicMock())
        assert outcome.status is TokenStatus.INVALID
        assert token_manager.validate(value).is_valid

    def test_failing_action_rolls_back_token(self, token_manager, alice, test_db):
        value = token_manager.issue_or_refresh(alice, TokenKind.PASSWORD_RESET)

        def explode(user):
            user.password_hash = "half-written"
            raise RuntimeError("mail server down")

        with pytest.raises(RuntimeError):
            token_manager.consume(value, TokenKind.PASSWORD_RESET, explode)

        assert token_manager.validate(value).is_valid
        user = test_db.get(User, alice.id)
        assert user.password_hash == "hashed_password"

    def test_lost_claim_race_reports_already_used(self, test_db, alice, wall_clock):
        store = SqlTokenStore(test_db)
        manager = TokenLifecycleManager(store, clock=wall_clock)
        value = manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)

        store.claim = MagicMock(return_value=False)
        action = MagicMock()
        outcome = manager.consume(value, TokenKind.EMAIL_VERIFICATION, action)

        assert outcome.status is TokenStatus.ALREADY_USED
        action.assert_not_called()

    def test_claim_succeeds_only_once_across_sessions(self, file_db, wall_clock):
        setup = file_db()
        user = User(email="bob@test.com", username="bob", password_hash="x")
        setup.add(user)
        setup.commit()
        value = TokenLifecycleManager(SqlTokenStore(setup), clock=wall_clock).issue_or_refresh(
            user, TokenKind.PASSWORD_RESET
        )
        setup.close()

        first, second = SqlTokenStore(file_db()), SqlTokenStore(file_db())
        row_a = first.find_by_value(value)
        row_b = second.find_by_value(value)
        assert row_a.used is False and row_b.used is False

        now = wall_clock()
        assert first.claim(row_a.id, value, now) is True
        first.commit()
        assert second.claim(row_b.id, value, now) is False
        second.rollback()

        first.session.close()
        second.session.close()

    def test_claim_requires_matching_value(self, test_db, alice, wall_clock):
        store = SqlTokenStore(test_db)
        value = TokenLifecycleManager(store, clock=wall_clock).issue_or_refresh(
            alice, TokenKind.PASSWORD_RESET
        )
        row = store.find_by_value(value)

        assert store.claim(row.id, "some-older-value", wall_clock()) is False
        assert store.claim(row.id, value, wall_clock()) is True

    def test_refresh_before_claim_rejects_stale_token(self, file_db, wall_clock):
        """A link replaced after the check must not change the password or burn the new link."""
        setup = file_db()
        user = User(email="bob@test.com", username="bob", password_hash="old")
        setup.add(user)
        setup.commit()
        user_id = user.id
        stale = TokenLifecycleManager(SqlTokenStore(setup), clock=wall_clock).issue_or_refresh(
            user, TokenKind.PASSWORD_RESET
        )
        setup.close()

        other = file_db()
        fresh = []

        def refresh_elsewhere():
            manager = TokenLifecycleManager(SqlTokenStore(other), clock=wall_clock)
            fresh.append(
                manager.issue_or_refresh(other.get(User, user_id), TokenKind.PASSWORD_RESET)
            )

        session = file_db()
        manager = TokenLifecycleManager(
            InterruptedStore(session, refresh_elsewhere), clock=wall_clock
        )
        action = MagicMock()

        outcome = manager.consume(stale, TokenKind.PASSWORD_RESET, action)

        assert outcome.status is TokenStatus.INVALID
        action.assert_not_called()
        session.close()
        other.close()

        check = file_db()
        checker = TokenLifecycleManager(SqlTokenStore(check), clock=wall_clock)
        assert checker.validate(fresh[0]).is_valid
        assert check.get(User, user_id).password_hash == "old"
        check.close()

    def test_expiry_before_claim_reports_expired(self, test_db, alice, wall_clock):
        store = InterruptedStore(test_db, lambda: wall_clock.advance(days=1))
        manager = TokenLifecycleManager(store, clock=wall_clock)
        value = manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)

        action = MagicMock()
        outcome = manager.consume(value, TokenKind.EMAIL_VERIFICATION, action)

        assert outcome.status is TokenStatus.EXPIRED
        action.assert_not_called()
        assert manager.validate(value).status is TokenStatus.EXPIRED


class TestUnknownKind:
    """Rows with a kind this code does not know."""

    def test_unknown_kind_is_invalid(self, token_manager, alice, test_db, wall_clock):
        test_db.add(
            SecurityToken(
                user_id=alice.id,
                kind="magic_link",
                token="odd-token",
                expiry_date=wall_clock.now + timedelta(hours=1),
            )
        )
        test_db.commit()

        assert token_manager.validate("odd-token").status is TokenStatus.INVALID
        outcome = token_manager.consume("odd-token", TokenKind.EMAIL_VERIFICATION, MagicMock())
        assert outcome.status is TokenStatus.INVALID


class TestPurgeExpired:
    """Expired token purge."""

    def test_purges_expired_regardless_of_used(self, token_manager, user_factory, wall_clock):
        alice = user_factory("alice@test.com", "alice")
        bob = user_factory("bob@test.com", "bob")
        used = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        token_manager.consume(used, TokenKind.EMAIL_VERIFICATION, _mark_verified)
        token_manager.issue_or_refresh(bob, TokenKind.PASSWORD_RESET)

        wall_clock.advance(hours=25)
        fresh = token_manager.issue_or_refresh(alice, TokenKind.PASSWORD_RESET)

        assert token_manager.purge_expired() == 2
        assert token_manager.validate(used).status is TokenStatus.INVALID
        assert token_manager.validate(fresh).is_valid

    def test_purge_is_strictly_before_cutoff(self, token_manager, alice, wall_clock):
        value = token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        expiry = wall_clock.now + timedelta(hours=24)

        assert token_manager.purge_expired(now=expiry) == 0
        assert token_manager.purge_expired(now=expiry + timedelta(seconds=1)) == 1
        assert token_manager.validate(value).status is TokenStatus.INVALID

    def test_purge_by_kind(self, token_manager, alice, wall_clock):
        token_manager.issue_or_refresh(alice, TokenKind.EMAIL_VERIFICATION)
        token_manager.issue_or_refresh(alice, TokenKind.PASSWORD_RESET)
        later = wall_clock.now + timedelta(days=2)

        assert token_manager.purge_expired(now=later, kind=TokenKind.PASSWORD_RESET) == 1
        assert token_manager.purge_expired(now=later, kind=TokenKind.EMAIL_VERIFICATION) == 1


class TestStoreFailures:
    """Persistence faults are not reported as bad links."""

    def test_sql_store_is_a_token_store(self, test_db):
        assert isinstance(SqlTokenStore(test_db), TokenStore)

    def test_database_error_propagates_as_token_store_error(self, wall_clock):
        session = MagicMock()
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        manager = TokenLifecycleManager(SqlTokenStore(session), clock=wall_clock)

        with pytest.raises(TokenStoreError) as exc_info:
            manager.validate("some-token")

        assert exc_info.value.operation == "find_by_value"
        assert isinstance(exc_info.value.cause, OperationalError)

    def test_purge_failure_propagates(self, wall_clock):
        session = MagicMock()
        session.execute.side_effect = OperationalError("DELETE", {}, Exception("db down"))
        manager = TokenLifecycleManager(SqlTokenStore(session), clock=wall_clock)

        with pytest.raises(TokenStoreError):
            manager.purge_expired()
