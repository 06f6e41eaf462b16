from studio_quota.features.allowance.service import get_allowance
from studio_quota.features.users.service import ensure_user, get_user, get_user_by_email


def test_ensure_user_is_idempotent():
    first = ensure_user("u1", "New@Example.com")
    second = ensure_user("u1")

    assert first == second
    assert first.email == "new@example.com"
    assert get_user_by_email("NEW@example.com").user_id == "u1"


def test_ensure_user_fills_missing_email_but_never_overwrites():
    ensure_user("u1")
    assert get_user("u1").email is None

    ensure_user("u1", "first@example.com")
    ensure_user("u1", "second@example.com")

    assert get_user("u1").email == "first@example.com"


def test_new_user_starts_on_free_allowance():
    ensure_user("u1")

    allowance = get_allowance("u1")

    assert allowance.plan_tier == "free"
    assert allowance.base_used == 0
    assert allowance.remaining == 5


def test_unknown_user_lookups_return_none():
    assert get_user("ghost") is None
    assert get_user_by_email("ghost@example.com") is None
    assert get_user_by_email("  ") is None
