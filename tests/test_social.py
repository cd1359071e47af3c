"""Tests for follow edges, the follow-joined feed and marking articles sold."""
from decimal import Decimal
from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from app.closet import create_app
from app.closet.db import session_scope
from app.closet.errors import Forbidden, InvalidOperation, InvalidStateTransition, NotFound, PersistenceError
from app.closet.models import AuditEvent, Base, User
from app.closet.modules.fanout.dispatcher import FanOutDispatcher
from app.closet.modules.listings.models import Article, ArticleStatus
from app.closet.modules.notifications.models import FeedItemType, NotificationType
from app.closet.modules.social.models import Follow
from app.closet.modules.social.service import SocialService
from app.closet.rbac import Principal
from app.closet.services import get_services


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.delenv("NOTIFICATIONS_DATABASE_URL", raising=False)
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("FANOUT_RETRY_BASE_DELAY", "0")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    yield app
    get_services(app).dispatcher.close()


@pytest.fixture()
def people(app):
    with session_scope(app) as s:
        def add(email, role, name, is_active=True):
            u = User(email=email, name=name, password_hash=generate_password_hash("pw"), role=role, is_active=is_active)
            s.add(u)
            s.flush()
            return u.id

        ids = SimpleNamespace(
            admin=add("admin@example.com", "ADMIN", "Admin"),
            alice=add("alice@example.com", "BUYER", "Alice"),
            bob=add("bob@example.com", "SELLER", "Bob"),
            carol=add("carol@example.com", "SELLER", "Carol"),
            gone=add("gone@example.com", "BUYER", "Gone", is_active=False),
        )
    return ids


def _p(user_id, role="BUYER"):
    return Principal(user_id=user_id, role=role)


def _pending_article(app, seller_id, title="Denim jacket"):
    with session_scope(app) as s:
        a = Article(seller_id=seller_id, title=title, price=Decimal("40.00"))
        s.add(a)
        s.flush()
        article_id = a.id
    return article_id


def test_follow_creates_edge_and_notifies_target(app, people):
    svc = get_services(app)
    result = svc.social.follow(_p(people.alice), people.bob)

    assert result.is_following is True
    assert result.notified is True
    assert svc.social.is_following(_p(people.alice), people.bob) is True
    assert svc.social.is_following(_p(people.bob), people.alice) is False

    (n,) = svc.notification_store.list_notifications(people.bob, 1, 20, False).items
    assert n.type == NotificationType.NEW_FOLLOWER
    assert n.message == "Alice started following you"
    assert n.actor_id == people.alice
    assert n.entity_type == "user"
    assert n.entity_id == str(people.alice)

    with session_scope(app) as s:
        actions = [e.action for e in s.query(AuditEvent).all()]
    assert actions == ["social.follow"]


def test_cannot_follow_self(app, people):
    svc = get_services(app)
    with pytest.raises(InvalidOperation):
        svc.social.follow(_p(people.alice), people.alice)
    assert svc.graph_store.count_followers(people.alice) == 0
    assert svc.notification_store.count_rows() == 0


def test_duplicate_follow_rejected(app, people):
    svc = get_services(app)
    svc.social.follow(_p(people.alice), people.bob)
    with pytest.raises(InvalidOperation):
        svc.social.follow(_p(people.alice), people.bob)
    assert svc.graph_store.count_followers(people.bob) == 1
    assert svc.notification_store.count_rows(user_id=people.bob) == 1


def test_unique_pair_constraint_settles_races(app, people):
    svc = get_services(app)
    svc.graph_store.create_edge(people.alice, people.bob)
    with pytest.raises(InvalidOperation):
        svc.graph_store.create_edge(people.alice, people.bob)
    assert svc.graph_store.count_followers(people.bob) == 1


def test_follow_unknown_or_inactive_user(app, people):
    svc = get_services(app)
    with pytest.raises(NotFound):
        svc.social.follow(_p(people.alice), 424242)
    with pytest.raises(NotFound):
        svc.social.follow(_p(people.alice), people.gone)


def test_unfollow(app, people):
    svc = get_services(app)
    with pytest.raises(InvalidOperation):
        svc.social.unfollow(_p(people.alice), people.bob)

    svc.social.follow(_p(people.alice), people.bob)
    result = svc.social.unfollow(_p(people.alice), people.bob)
    assert result.is_following is False
    assert svc.social.is_following(_p(people.alice), people.bob) is False
    assert svc.graph_store.count_followers(people.bob) == 0


def test_refollow_notification_collapses(app, people):
    svc = get_services(app)
    svc.social.follow(_p(people.alice), people.bob)
    svc.social.unfollow(_p(people.alice), people.bob)
    svc.social.follow(_p(people.alice), people.bob)

    assert svc.notification_store.count_rows(user_id=people.bob) == 2
    assert svc.notifications.unread_count(_p(people.bob, "SELLER")) == 1


def test_follow_survives_notification_failure(app, people):
    svc = get_services(app)

    class _Down:
        def insert_notifications_batch(self, drafts):
            raise PersistenceError("notification store unavailable")

    dispatcher = FanOutDispatcher(svc.graph_store, _Down(), None)
    try:
        social = SocialService(svc.graph_store, svc.users, svc.notification_store, dispatcher)
        result = social.follow(_p(people.alice), people.carol)
    finally:
        dispatcher.close()

    assert result.is_following is True
    assert result.notified is False
    assert svc.graph_store.edge_exists(people.alice, people.carol)


def test_followers_and_following_lists(app, people):
    svc = get_services(app)
    svc.social.follow(_p(people.alice), people.bob)
    svc.social.follow(_p(people.carol, "SELLER"), people.bob)
    svc.social.follow(_p(people.alice), people.carol)

    followers = svc.social.followers(_p(people.alice), people.bob, 1, 20)
    assert followers.total == 2
    assert {f["name"] for f in followers.items} == {"Alice", "Carol"}
    assert all(f["followedAt"] for f in followers.items)

    following = svc.social.following(_p(people.bob, "SELLER"), people.alice, 1, 1)
    assert following.total == 2
    assert len(following.items) == 1
    assert following.pagination()["totalPages"] == 2

    with pytest.raises(NotFound):
        svc.social.followers(_p(people.alice), 999, 1, 20)


def test_feed_joins_follow_edges(app, people):
    svc = get_services(app)
    svc.social.follow(_p(people.alice), people.bob)
    article_id = _pending_article(app, people.bob)

    decision = svc.moderation.decide(_p(people.admin, "ADMIN"), article_id, "APPROVE")
    decision.fanout.result(timeout=10)
    svc.dispatcher.publish_feed_item(type=FeedItemType.PROFILE_UPDATE, user_id=people.carol, content="New avatar")

    feed = svc.social.feed(_p(people.alice), 1, 20)
    assert [(i.type, i.user_id, i.article_id) for i in feed.items] == [
        (FeedItemType.NEW_ARTICLE, people.bob, article_id)
    ]
    assert feed.extra["users"][people.bob]["name"] == "Bob"

    assert svc.social.feed(_p(people.carol, "SELLER"), 1, 20).total == 0
    assert svc.social.feed(_p(people.alice), 1, 20, FeedItemType.ARTICLE_SOLD).total == 0
    with pytest.raises(InvalidOperation):
        svc.social.feed(_p(people.alice), 1, 20, "BOGUS")


def test_mark_sold(app, people):
    svc = get_services(app)
    svc.social.follow(_p(people.alice), people.bob)
    article_id = _pending_article(app, people.bob)

    with pytest.raises(InvalidStateTransition):
        svc.listings.mark_sold(_p(people.bob, "SELLER"), article_id)

    svc.moderation.decide(_p(people.admin, "ADMIN"), article_id, "APPROVE").fanout.result(timeout=10)

    with pytest.raises(Forbidden):
        svc.listings.mark_sold(_p(people.carol, "SELLER"), article_id)

    article = svc.listings.mark_sold(_p(people.bob, "SELLER"), article_id)
    assert article.is_available is False
    assert article.status == ArticleStatus.APPROVED

    with pytest.raises(InvalidStateTransition):
        svc.listings.mark_sold(_p(people.bob, "SELLER"), article_id)
    with pytest.raises(NotFound):
        svc.listings.mark_sold(_p(people.bob, "SELLER"), 31337)

    sold = svc.social.feed(_p(people.alice), 1, 20, FeedItemType.ARTICLE_SOLD)
    assert [i.article_id for i in sold.items] == [article_id]


def test_follow_edges_are_unique_in_table(app, people):
    svc = get_services(app)
    svc.social.follow(_p(people.alice), people.bob)
    with session_scope(app) as s:
        assert s.query(Follow).filter(Follow.follower_id == people.alice).count() == 1
