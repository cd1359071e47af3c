"""Tests for the moderation decision flow."""
import threading
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from werkzeug.security import generate_password_hash

from app.closet import create_app
from app.closet.db import session_scope
from app.closet.errors import Forbidden, InvalidOperation, InvalidStateTransition, NotFound, PersistenceError
from app.closet.models import Base, User
from app.closet.modules.listings.models import Article, ArticlePromotion, ArticleStatus, ModerationLog
from app.closet.modules.moderation.service import ModerationService
from app.closet.modules.social.models import Follow
from app.closet.rbac import Principal
from app.closet.services import get_services
from app.closet.utils import utcnow


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.delenv("NOTIFICATIONS_DATABASE_URL", raising=False)
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("FANOUT_BATCH_SIZE", "2")
    monkeypatch.setenv("FANOUT_RETRY_BASE_DELAY", "0")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    yield app
    get_services(app).dispatcher.close()


def _user(s, email, role, name=""):
    u = User(email=email, name=name or email.split("@")[0], password_hash=generate_password_hash("pw"), role=role)
    s.add(u)
    s.flush()
    return u


def _article(s, seller_id, title="Vintage jacket", durations=(7,), created_at=None):
    a = Article(seller_id=seller_id, title=title, price=Decimal("25.00"), images=["a.jpg", "b.jpg"])
    if created_at is not None:
        a.created_at = created_at
    s.add(a)
    s.flush()
    for days in durations:
        s.add(ArticlePromotion(article_id=a.id, type="BOOST", price=Decimal("2.50"), duration_days=days))
    s.flush()
    return a


@pytest.fixture()
def world(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com", "ADMIN")
        mod = _user(s, "mod@example.com", "MODERATOR")
        seller = _user(s, "sam@example.com", "SELLER", name="Sam")
        f1 = _user(s, "f1@example.com", "BUYER")
        f2 = _user(s, "f2@example.com", "BUYER")
        s.add_all([Follow(follower_id=f1.id, following_id=seller.id), Follow(follower_id=f2.id, following_id=seller.id)])
        article = _article(s, seller.id)
        ids = SimpleNamespace(
            admin=admin.id, mod=mod.id, seller=seller.id, f1=f1.id, f2=f2.id, article=article.id
        )
    return ids


def _admin(world):
    return Principal(user_id=world.admin, role="ADMIN")


def test_approve_publishes_activates_promotions_and_fans_out(app, world):
    svc = get_services(app)
    decision = svc.moderation.decide(_admin(world), world.article, "APPROVE", notes="Looks good")

    assert decision.article.status == ArticleStatus.APPROVED
    assert decision.article.is_available is True
    assert decision.article.published_at is not None
    assert decision.log.action == "APPROVE"
    assert decision.log.moderator_id == world.admin
    assert decision.log.notes == "Looks good"

    (promo,) = decision.promotions
    assert promo.is_active is True
    assert promo.end_date - promo.start_date == timedelta(days=7)

    result = decision.fanout.result(timeout=10)
    assert result.complete
    assert result.audience_size == 2

    store = svc.notification_store
    feed = store.list_feed_items(type="NEW_ARTICLE")
    assert len(feed) == 1
    assert feed[0].user_id == world.seller
    assert feed[0].article_id == world.article

    for follower in (world.f1, world.f2):
        assert store.count_unread(follower) == 1
        (n,) = store.list_notifications(follower, 1, 20, False).items
        assert n.type == "NEW_ARTICLE_FROM_FOLLOWED"
        assert n.message == "Sam published a new article: Vintage jacket"
        assert n.entity_id == str(world.article)
        assert n.actor_id == world.seller
    assert store.count_rows(user_id=world.seller) == 0
    assert svc.listing_store.count_moderation_logs(world.article) == 1


def test_reject_records_reason_and_skips_fanout(app, world):
    svc = get_services(app)
    decision = svc.moderation.decide(
        _admin(world), world.article, "reject", notes="blurry", rejection_reason="Photos are unclear"
    )

    assert decision.article.status == ArticleStatus.REJECTED
    assert decision.article.is_available is False
    assert decision.article.published_at is None
    assert decision.article.rejection_reason == "Photos are unclear"
    assert decision.fanout is None
    assert all(p.is_active is False for p in decision.promotions)
    assert svc.notification_store.list_feed_items() == []
    assert svc.notification_store.count_rows() == 0


def test_decisions_are_final(app, world):
    svc = get_services(app)
    svc.moderation.decide(_admin(world), world.article, "APPROVE")

    with pytest.raises(InvalidStateTransition):
        svc.moderation.decide(_admin(world), world.article, "REJECT", rejection_reason="changed my mind")

    article = svc.listing_store.get_by_id(world.article)
    assert article.status == ArticleStatus.APPROVED
    assert article.is_available is True
    assert svc.listing_store.count_moderation_logs(world.article) == 1


def test_unknown_action_and_missing_article(app, world):
    svc = get_services(app)
    with pytest.raises(InvalidOperation):
        svc.moderation.decide(_admin(world), world.article, "ARCHIVE")
    with pytest.raises(NotFound):
        svc.moderation.decide(_admin(world), 999999, "APPROVE")
    assert svc.listing_store.count_moderation_logs(world.article) == 0


class _StaleReadStore:
    """Hands out a stale PENDING snapshot so only the conditional update can catch the race."""

    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    @contextmanager
    def transaction(self):
        with self.inner.transaction() as uow:
            yield _StaleUnitOfWork(uow)


class _StaleUnitOfWork:
    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def get_by_id(self, article_id, *, for_update=False, refresh=False):
        article = self.inner.get_by_id(article_id, for_update=for_update, refresh=refresh)
        if article is None or refresh:
            return article
        return SimpleNamespace(id=article.id, status=ArticleStatus.PENDING_MODERATION)


def test_stale_read_loses_to_committed_decision(app, world):
    svc = get_services(app)
    svc.moderation.decide(_admin(world), world.article, "APPROVE")

    stale = ModerationService(_StaleReadStore(svc.listing_store))
    with pytest.raises(InvalidStateTransition):
        stale.decide(_admin(world), world.article, "REJECT")

    assert svc.listing_store.get_by_id(world.article).status == ArticleStatus.APPROVED
    assert svc.listing_store.count_moderation_logs(world.article) == 1


def test_concurrent_decisions_only_one_wins(app, world):
    svc = get_services(app)
    moderation = ModerationService(svc.listing_store)
    barrier = threading.Barrier(2)
    outcomes = []

    def run(action):
        barrier.wait()
        try:
            outcomes.append(moderation.decide(_admin(world), world.article, action))
        except Exception as e:
            outcomes.append(e)

    threads = [threading.Thread(target=run, args=(a,)) for a in ("APPROVE", "REJECT")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    winners = [o for o in outcomes if not isinstance(o, Exception)]
    losers = [o for o in outcomes if isinstance(o, Exception)]
    assert len(outcomes) == 2
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], InvalidStateTransition), repr(losers[0])
    assert svc.listing_store.count_moderation_logs(world.article) == 1
    assert svc.listing_store.get_by_id(world.article).status == winners[0].article.status


def test_each_promotion_uses_its_own_duration(app, world):
    with session_scope(app) as s:
        article_id = _article(s, world.seller, title="Boots", durations=(1, 7, 30)).id

    decision = get_services(app).moderation.decide(_admin(world), article_id, "APPROVE")
    assert [p.duration_days for p in decision.promotions] == [1, 7, 30]
    for p in decision.promotions:
        assert p.is_active is True
        assert p.end_date - p.start_date == timedelta(days=p.duration_days)
    decision.fanout.result(timeout=10)


class _FailingLogStore(_StaleReadStore):
    @contextmanager
    def transaction(self):
        with self.inner.transaction() as uow:
            yield _FailingLogUnitOfWork(uow)


class _FailingLogUnitOfWork(_StaleUnitOfWork):
    def get_by_id(self, article_id, *, for_update=False, refresh=False):
        return self.inner.get_by_id(article_id, for_update=for_update, refresh=refresh)

    def insert_moderation_log(self, **kwargs):
        raise OperationalError("INSERT INTO moderation_logs", {}, Exception("disk I/O error"))


def test_store_failure_rolls_back_everything(app, world):
    svc = get_services(app)
    moderation = ModerationService(_FailingLogStore(svc.listing_store), svc.dispatcher)

    with pytest.raises(PersistenceError):
        moderation.decide(_admin(world), world.article, "APPROVE")

    article = svc.listing_store.get_by_id(world.article)
    assert article.status == ArticleStatus.PENDING_MODERATION
    assert article.is_available is False
    assert article.published_at is None
    assert all(p.is_active is False and p.start_date is None for p in article.promotions)
    assert svc.listing_store.count_moderation_logs(world.article) == 0
    assert svc.dispatcher.join(timeout=5)
    assert svc.notification_store.list_feed_items() == []


def test_moderator_views_but_cannot_decide(app, world):
    svc = get_services(app)
    mod = Principal(user_id=world.mod, role="MODERATOR")

    assert [a.id for a in svc.moderation.list_pending(mod)] == [world.article]
    assert svc.moderation.history(mod).total == 0
    with pytest.raises(Forbidden):
        svc.moderation.decide(mod, world.article, "APPROVE")
    assert svc.listing_store.get_by_id(world.article).status == ArticleStatus.PENDING_MODERATION

    seller = Principal(user_id=world.seller, role="SELLER")
    with pytest.raises(Forbidden):
        svc.moderation.list_pending(seller)
    with pytest.raises(Forbidden):
        svc.moderation.history(seller)


def test_pending_queue_is_oldest_first(app, world):
    now = utcnow()
    with session_scope(app) as s:
        newer = _article(s, world.seller, title="Newer", durations=(), created_at=now + timedelta(minutes=5))
        older = _article(s, world.seller, title="Older", durations=(), created_at=now - timedelta(days=1))
        ids = (older.id, newer.id)

    pending = get_services(app).moderation.list_pending(_admin(world))
    assert [a.id for a in pending] == [ids[0], world.article, ids[1]]


def test_available_requires_approved(app, world):
    with pytest.raises(IntegrityError):
        with session_scope(app) as s:
            s.add(Article(seller_id=world.seller, title="Sneaky", status=ArticleStatus.PENDING_MODERATION, is_available=True))


def test_history_filters(app, world):
    svc = get_services(app)
    with session_scope(app) as s:
        second = _article(s, world.seller, title="Scarf", durations=()).id

    svc.moderation.decide(_admin(world), world.article, "APPROVE", notes="great condition")
    svc.moderation.decide(_admin(world), second, "REJECT", notes="counterfeit", rejection_reason="Not authentic")
    svc.dispatcher.join(timeout=10)

    everything = svc.moderation.history(_admin(world))
    assert everything.total == 2
    assert [log.action for log in everything.items] == ["REJECT", "APPROVE"]
    assert set(everything.extra["articles"]) == {world.article, second}

    rejected = svc.moderation.history(_admin(world), action="reject")
    assert [log.article_id for log in rejected.items] == [second]

    assert svc.moderation.history(_admin(world), search="CONDITION").total == 1
    assert svc.moderation.history(_admin(world), moderator_id=world.mod).total == 0
    assert svc.moderation.history(_admin(world), start=utcnow() + timedelta(days=1)).total == 0
    assert svc.moderation.history(_admin(world), page=2, limit=1).items[0].action == "APPROVE"

    with session_scope(app) as s:
        assert len(s.execute(select(ModerationLog)).scalars().all()) == 2
