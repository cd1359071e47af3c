import pytest

from app.closet.errors import Forbidden
from app.closet.rbac import POLICY, Actions, Principal, Roles, authorize, is_allowed


@pytest.mark.parametrize(
    "role,action,allowed",
    [
        (Roles.ADMIN, Actions.MODERATION_DECIDE, True),
        (Roles.ADMIN, Actions.MODERATION_VIEW_QUEUE, True),
        (Roles.MODERATOR, Actions.MODERATION_VIEW_QUEUE, True),
        (Roles.MODERATOR, Actions.MODERATION_VIEW_HISTORY, True),
        (Roles.MODERATOR, Actions.MODERATION_DECIDE, False),
        (Roles.SELLER, Actions.MODERATION_VIEW_QUEUE, False),
        (Roles.BUYER, Actions.MODERATION_DECIDE, False),
        (Roles.BUYER, Actions.SOCIAL_FOLLOW, True),
        (Roles.SELLER, Actions.ARTICLES_MARK_SOLD, True),
    ],
)
def test_policy_table(role, action, allowed):
    assert is_allowed(role, action) is allowed


def test_every_role_has_a_policy():
    assert set(POLICY) == set(Roles.ALL)


def test_role_lookup_is_case_insensitive():
    assert is_allowed("admin", Actions.MODERATION_DECIDE)


def test_authorize_rejects_missing_or_unknown_principal():
    with pytest.raises(Forbidden):
        authorize(None, Actions.FEED_VIEW)
    with pytest.raises(Forbidden):
        authorize(Principal(user_id=1, role="GUEST"), Actions.FEED_VIEW)

    p = Principal(user_id=1, role=Roles.ADMIN)
    assert authorize(p, Actions.MODERATION_DECIDE) is p
