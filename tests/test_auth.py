import pytest

from auth import SIGNED_IN, SIGNED_OUT, AuthSession, verify_password
from errors import NotFoundError, ValidationError


def test_sign_up_creates_primary_profile_and_system_modules(store, provider) -> None:
    session = AuthSession(provider)
    result = session.sign_up("Grace@Example.com ", "compiler", "Grace Hopper")

    assert result.ok
    assert result.data.user.email == "grace@example.com"
    assert session.user_id == result.data.user.id
    [profile] = session.profiles()
    assert profile.profile_name == "Primary"
    assert profile.display_name == "Grace Hopper"
    assert profile.is_primary is True
    modules = store.list_modules(session.user_id)
    assert [m.display_name for m in modules] == ["Need", "Want", "Savings", "Investments"]
    assert all(m.is_system_module for m in modules)


def test_password_is_stored_hashed(store, auth) -> None:
    stored = store.get_password_hash("ada@example.com")

    assert stored != "analytical"
    assert verify_password("analytical", stored)


def test_duplicate_sign_up_is_refused(provider, auth) -> None:
    result = AuthSession(provider).sign_up("ada@example.com", "different")

    assert result.data is None
    assert result.error == "User already exists"


def test_sign_in_checks_password(provider, auth) -> None:
    wrong = AuthSession(provider).sign_in("ada@example.com", "engine")
    assert wrong.error == "Invalid email or password"

    right = AuthSession(provider).sign_in("ADA@example.com", "analytical")
    assert right.ok
    assert right.data.user.id == auth.user_id


def test_start_restores_a_signed_token(provider, auth) -> None:
    restored = AuthSession(provider)

    session = restored.start(auth.current.access_token)

    assert session is not None
    assert restored.user_id == auth.user_id


def test_tampered_token_is_rejected(provider, auth) -> None:
    token = auth.current.access_token

    assert provider.get_session(token + "x") is None
    assert AuthSession(provider).start(None) is None


def test_listeners_hear_sign_in_and_sign_out(provider, auth) -> None:
    events = []
    session = AuthSession(provider)
    unsubscribe = session.on_auth_change(lambda event, current: events.append(event))

    session.sign_in("ada@example.com", "analytical")
    session.sign_out()
    unsubscribe()
    session.sign_in("ada@example.com", "analytical")

    assert events == [SIGNED_IN, SIGNED_OUT]
    assert session.user_id == auth.user_id


def test_sign_out_clears_the_session(auth) -> None:
    result = auth.sign_out()

    assert result.ok
    assert auth.current is None
    assert auth.profiles() == []
    assert auth.create_profile("Later") is None


def test_profiles_list_primary_first(auth) -> None:
    auth.create_profile("Family", "Family budget")

    profiles = auth.profiles()

    assert [p.profile_name for p in profiles] == ["Primary", "Family"]
    assert profiles[1].is_primary is False


def test_profile_names_are_unique_per_user(auth) -> None:
    with pytest.raises(ValidationError) as exc:
        auth.create_profile("Primary")
    assert exc.value.field == "profile_name"


def test_set_primary_profile_demotes_previous(provider, auth) -> None:
    family = auth.create_profile("Family")

    provider.set_primary_profile(auth.user_id, family.id)

    primaries = [p.profile_name for p in auth.profiles() if p.is_primary]
    assert primaries == ["Family"]
    assert auth.profiles()[0].id == family.id


def test_primary_profile_cannot_be_deactivated(provider, auth, primary) -> None:
    with pytest.raises(ValidationError):
        provider.deactivate_profile(auth.user_id, primary.id)


def test_deactivated_profile_is_hidden(provider, auth) -> None:
    side = auth.create_profile("Side")

    provider.deactivate_profile(auth.user_id, side.id)

    assert [p.profile_name for p in auth.profiles()] == ["Primary"]
    with pytest.raises(ValidationError):
        provider.set_primary_profile(auth.user_id, side.id)


def test_unknown_profile_raises(provider, auth) -> None:
    with pytest.raises(NotFoundError):
        provider.set_primary_profile(auth.user_id, "missing")
