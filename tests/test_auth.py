import pytest

from sqlalchemy.exc import SQLAlchemyError

from errors import AuthError
from models import db, User
from sessions import SESSION_TIMEOUT

PASSWORD = "correct horse"


class TestRegister:

    def test_success_starts_session(self, auth, services):
        result = auth.register("  alice  ", "Alice@Mail.com ", PASSWORD, now=1000.0)

        assert result.success
        assert result.message == "Account created successfully"
        assert result.payload["user"]["username"] == "alice"
        assert result.payload["user"]["email"] == "alice@mail.com"
        assert result.token
        assert "token" not in result.to_dict()
        assert auth.is_authenticated(result.token, now=1001.0)

    def test_password_is_hashed(self, auth, services):
        auth.register("alice", "alice@mail.com", PASSWORD, now=1000.0)
        user = User.query.filter_by(username="alice").one()

        assert user.pw_hash != PASSWORD
        assert services.crypto.verify_password(PASSWORD, user.pw_hash)
        assert user.created_at is not None
        assert user.last_login is None

    @pytest.mark.parametrize("username, email, password, message", [
        ("ab", "bad", "short", "Username must be 3-50 characters"),
        ("a" * 51, "alice@mail.com", PASSWORD, "Username must be 3-50 characters"),
        ("bad name!", "bad", "short", "Username can only contain letters, numbers, and underscores"),
        ("alice", "not-an-email", "short", "Invalid email address"),
        ("alice", "alice@mail.com", "short", "Password must be at least 8 characters"),
    ])
    def test_reports_first_violation_only(self, auth, username, email, password, message):
        result = auth.register(username, email, password, now=1000.0)

        assert not result.success
        assert result.message == message
        assert result.token is None
        assert User.query.count() == 0

    def test_duplicate_username(self, auth, alice):
        result = auth.register("alice", "other@mail.com", PASSWORD, now=1000.0)

        assert not result.success
        assert result.message == "Username already taken"
        assert User.query.count() == 1

    def test_duplicate_email_is_case_insensitive(self, auth, alice):
        result = auth.register("alice2", "ALICE@mail.COM", PASSWORD, now=1000.0)

        assert not result.success
        assert result.message == "Email already registered"
        assert User.query.count() == 1

    def test_username_checked_before_email(self, auth, alice):
        result = auth.register("alice", "alice@mail.com", PASSWORD, now=1000.0)
        assert result.message == "Username already taken"


class TestLogin:

    def test_by_username(self, auth, alice):
        result = auth.login("alice", PASSWORD, now=2000.0)

        assert result.success
        assert result.message == "Login successful"
        assert result.payload["user"]["id"] == alice[0]
        assert auth.is_authenticated(result.token, now=2001.0)
        assert db.session.get(User, alice[0]).last_login is not None

    def test_by_email_any_case(self, auth, alice):
        result = auth.login(" ALICE@mail.com ", PASSWORD, now=2000.0)
        assert result.success

    def test_username_is_exact(self, auth, alice):
        assert not auth.login("ALICE", PASSWORD, now=2000.0).success

    def test_failures_are_indistinguishable(self, auth, alice):
        wrong_password = auth.login("alice", "wrong password", now=2000.0)
        wrong_email_password = auth.login("alice@mail.com", "wrong password", now=2000.0)
        unknown_user = auth.login("mallory", PASSWORD, now=2000.0)
        unknown_email = auth.login("mallory@mail.com", PASSWORD, now=2000.0)

        results = [wrong_password, wrong_email_password, unknown_user, unknown_email]
        assert all(not r.success for r in results)
        assert {r.message for r in results} == {"Invalid credentials"}
        assert all(r.token is None for r in results)

    def test_each_login_gets_a_new_token(self, auth, alice):
        first = auth.login("alice", PASSWORD, now=2000.0).token
        second = auth.login("alice", PASSWORD, now=2000.0).token
        assert first != second


class TestSessionLifecycle:

    def test_logout_is_idempotent(self, auth, alice):
        _, token = alice

        assert auth.logout(token).success
        assert not auth.is_authenticated(token, now=1001.0)
        assert auth.logout(token).success
        assert auth.logout(None).success

    def test_activity_keeps_session_alive(self, auth, alice):
        _, token = alice

        assert auth.is_authenticated(token, now=1000.0 + 1500)
        assert auth.is_authenticated(token, now=1000.0 + 3000)

    def test_timeout_forces_logout(self, auth, services, alice):
        _, token = alice
        later = 1000.0 + SESSION_TIMEOUT + 1

        assert not auth.is_authenticated(token, now=later)
        assert services.sessions.get(token) is None
        with pytest.raises(AuthError):
            auth.require_user_id(token, now=later)

    def test_current_user(self, auth, alice):
        user_id, token = alice

        assert auth.current_user(token, now=1001.0) == {
            "id": user_id, "username": "alice", "email": "alice@mail.com",
        }
        assert auth.current_user("bogus", now=1001.0) is None

    def test_require_user_id(self, auth, alice):
        user_id, token = alice
        assert auth.require_user_id(token, now=1001.0) == user_id
        with pytest.raises(AuthError):
            auth.require_user_id(None, now=1001.0)


class TestChangePassword:

    def test_requires_session(self, auth, alice):
        result = auth.change_password("bogus", PASSWORD, "new password", now=1001.0)

        assert not result.success
        assert result.require_auth
        assert result.to_dict()["requireAuth"] is True

    def test_new_password_length(self, auth, alice):
        result = auth.change_password(alice[1], PASSWORD, "short", now=1001.0)
        assert result.message == "New password must be at least 8 characters"

    def test_wrong_current_password(self, auth, alice):
        result = auth.change_password(alice[1], "not my password", "new password", now=1001.0)

        assert not result.success
        assert result.message == "Current password is incorrect"
        assert not result.require_auth

    def test_success(self, auth, alice):
        result = auth.change_password(alice[1], PASSWORD, "new password", now=1001.0)

        assert result.success
        assert result.message == "Password changed successfully"
        assert auth.login("alice", "new password", now=1002.0).success
        assert not auth.login("alice", PASSWORD, now=1002.0).success

    def test_failed_commit_keeps_old_password(self, auth, alice, monkeypatch):
        def boom():
            raise SQLAlchemyError("disk full")
        monkeypatch.setattr(db.session, "commit", boom)

        result = auth.change_password(alice[1], PASSWORD, "new password", now=1001.0)
        monkeypatch.undo()

        assert not result.success
        assert result.message == "Failed to change password. Please try again."
        assert auth.login("alice", PASSWORD, now=1002.0).success


class TestUpdateProfile:

    def test_success_refreshes_session(self, auth, alice):
        user_id, token = alice
        result = auth.update_profile(token, "alice_b", "Alice.B@Mail.com", now=1001.0)

        assert result.success
        assert result.message == "Profile updated successfully"
        assert result.payload["user"] == {"id": user_id, "username": "alice_b", "email": "alice.b@mail.com"}
        assert auth.current_user(token, now=1002.0)["username"] == "alice_b"
        assert db.session.get(User, user_id).email == "alice.b@mail.com"

    def test_keeping_own_values_is_allowed(self, auth, alice):
        assert auth.update_profile(alice[1], "alice", "alice@mail.com", now=1001.0).success

    def test_username_used_by_someone_else(self, auth, alice, bob):
        result = auth.update_profile(alice[1], "bob", "alice@mail.com", now=1001.0)
        assert result.message == "Username already taken"

    def test_email_used_by_someone_else(self, auth, alice, bob):
        result = auth.update_profile(alice[1], "alice", "BOB@mail.com", now=1001.0)
        assert result.message == "Email already in use"

    def test_same_validation_as_registration(self, auth, alice):
        assert auth.update_profile(alice[1], "x", "alice@mail.com", now=1001.0).message == \
            "Username must be 3-50 characters"
        assert auth.update_profile(alice[1], "alice", "nope", now=1001.0).message == \
            "Invalid email address"

    def test_requires_session(self, auth, alice):
        result = auth.update_profile(None, "alice", "alice@mail.com", now=1001.0)
        assert result.require_auth
