import itertools

import pytest

from lchatd.roles import Role, has_permission


def test_role_order() -> None:
    assert Role.ADMIN > Role.MODERATOR > Role.USER > Role.GUEST
    assert [r.label for r in sorted(Role)] == ["Guest", "User", "Moderator", "Admin"]


def test_permission_is_monotonic() -> None:
    for role, required in itertools.product(Role, Role):
        allowed = has_permission(role, required)
        assert allowed == (role >= required)
        if not allowed:
            # Everything ranked below a denied role is denied as well.
            assert not any(has_permission(lower, required) for lower in Role if lower < role)
        else:
            assert all(has_permission(higher, required) for higher in Role if higher >= role)


@pytest.mark.parametrize(
    "value, expected",
    [("Admin", Role.ADMIN), ("moderator", Role.MODERATOR), (1, Role.USER), (Role.GUEST, Role.GUEST)],
)
def test_parse(value, expected) -> None:
    assert Role.parse(value) is expected


def test_parse_unknown() -> None:
    with pytest.raises(ValueError):
        Role.parse("owner")
    assert Role.parse("owner", Role.USER) is Role.USER
    assert Role.parse(True, Role.GUEST) is Role.GUEST
