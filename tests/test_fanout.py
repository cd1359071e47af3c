"""Tests for follower fan-out: batching, retries, timeouts and parked work."""
import time
from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

from app.closet import create_app
from app.closet.contracts import FanOutEvent
from app.closet.db import session_scope
from app.closet.errors import FanOutPartialFailure, InvalidOperation, PersistenceError
from app.closet.models import Base, User
from app.closet.modules.fanout.dispatcher import FanOutDispatcher
from app.closet.modules.listings.models import Article
from app.closet.modules.notifications.models import FeedItemType, Notification
from app.closet.modules.social.models import Follow
from app.closet.rbac import Principal
from app.closet.services import get_services


def _no_sleep(_seconds):
    return None


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


def _seed(app, followers=5):
    with session_scope(app) as s:
        seller = User(email="sam@example.com", name="Sam", password_hash=generate_password_hash("pw"), role="SELLER")
        s.add(seller)
        s.flush()
        ids = []
        for i in range(followers):
            u = User(email=f"f{i}@example.com", name=f"F{i}", password_hash=generate_password_hash("pw"), role="BUYER")
            s.add(u)
            s.flush()
            s.add(Follow(follower_id=u.id, following_id=seller.id))
            ids.append(u.id)
        article = Article(seller_id=seller.id, title="Linen shirt", price=Decimal("18.00"))
        s.add(article)
        s.flush()
        return seller.id, article.id, ids


def _event(seller_id, article_id):
    return FanOutEvent(
        kind=FeedItemType.NEW_ARTICLE,
        actor_id=seller_id,
        article_id=article_id,
        article_title="Linen shirt",
        actor_name="Sam",
    )


def _dispatcher(app, notifications=None, graph=None, **kwargs):
    svc = get_services(app)
    kwargs.setdefault("batch_size", 2)
    kwargs.setdefault("sleep", _no_sleep)
    kwargs.setdefault("retry_base_delay", 0)
    return FanOutDispatcher(
        graph or svc.graph_store,
        notifications or svc.notification_store,
        svc.retry_store,
        **kwargs,
    )


class _Wrapped:
    def __init__(self, inner):
        self.inner = inner
        self.batch_calls = 0

    def __getattr__(self, name):
        return getattr(self.inner, name)


class _AckLostOnce(_Wrapped):
    """Writes the first batch, then reports a failure as if the acknowledgement was lost."""

    def insert_notifications_batch(self, drafts):
        self.batch_calls += 1
        written = self.inner.insert_notifications_batch(drafts)
        if self.batch_calls == 1:
            raise PersistenceError("connection reset after commit")
        return written


class _SlowOnce(_Wrapped):
    def __init__(self, inner, delay):
        super().__init__(inner)
        self.delay = delay

    def insert_notifications_batch(self, drafts):
        self.batch_calls += 1
        if self.batch_calls == 1:
            time.sleep(self.delay)
        return self.inner.insert_notifications_batch(drafts)


class _Switchable(_Wrapped):
    def __init__(self, inner):
        super().__init__(inner)
        self.broken = True

    def insert_notifications_batch(self, drafts):
        self.batch_calls += 1
        if self.broken:
            raise PersistenceError("notification store unavailable")
        return self.inner.insert_notifications_batch(drafts)


class _DownGraph(_Wrapped):
    def list_follower_ids(self, user_id):
        raise PersistenceError("graph store unavailable")


def test_every_follower_notified_once_across_batches(app):
    seller_id, article_id, followers = _seed(app, followers=5)
    store = get_services(app).notification_store
    dispatcher = _dispatcher(app)
    try:
        result = dispatcher.dispatch(_event(seller_id, article_id))
    finally:
        dispatcher.close()

    assert result.complete
    assert result.audience_size == 5
    assert result.batches == 3
    assert result.attempts == 3
    assert result.delivered == 5
    assert len(store.list_feed_items(user_id=seller_id)) == 1
    assert store.count_rows() == 5
    for fid in followers:
        assert store.count_rows(user_id=fid) == 1


def test_no_followers_still_writes_feed_item(app):
    seller_id, article_id, _ = _seed(app, followers=0)
    store = get_services(app).notification_store
    dispatcher = _dispatcher(app)
    try:
        result = dispatcher.dispatch(_event(seller_id, article_id))
    finally:
        dispatcher.close()

    assert result.complete
    assert result.batches == 0
    assert len(store.list_feed_items(type=FeedItemType.NEW_ARTICLE)) == 1
    assert store.count_rows() == 0


def test_retried_batch_duplicates_collapse_in_read_model(app):
    seller_id, article_id, followers = _seed(app, followers=5)
    svc = get_services(app)
    flaky = _AckLostOnce(svc.notification_store)
    dispatcher = _dispatcher(app, notifications=flaky)
    try:
        result = dispatcher.dispatch(_event(seller_id, article_id))
    finally:
        dispatcher.close()

    assert result.complete
    assert result.attempts == 4
    # First batch (two followers) landed twice.
    assert svc.notification_store.count_rows() == 7
    for fid in followers:
        p = Principal(user_id=fid, role="BUYER")
        assert svc.notifications.unread_count(p) == 1
        assert svc.notifications.list_notifications(p).total == 1

    dup = Principal(user_id=followers[0], role="BUYER")
    (item,) = svc.notifications.list_notifications(dup).items
    assert svc.notifications.mark_read(dup, item["id"]) == 2
    assert svc.notifications.unread_count(dup) == 0


def test_timed_out_batch_is_retried(app):
    seller_id, article_id, followers = _seed(app, followers=5)
    svc = get_services(app)
    slow = _SlowOnce(svc.notification_store, delay=0.5)
    dispatcher = _dispatcher(app, notifications=slow, batch_timeout_seconds=0.1)
    try:
        result = dispatcher.dispatch(_event(seller_id, article_id))
    finally:
        # Waits for the timed-out write, which still lands.
        dispatcher.close()

    assert result.complete
    assert result.attempts == 4
    assert svc.notification_store.count_rows() == 7
    for fid in followers:
        assert svc.notification_store.count_unread(fid) == 1


def test_exhausted_batches_are_parked_and_redriven(app):
    seller_id, article_id, followers = _seed(app, followers=5)
    svc = get_services(app)
    switch = _Switchable(svc.notification_store)
    dispatcher = _dispatcher(app, notifications=switch, max_attempts=2)
    try:
        with pytest.raises(FanOutPartialFailure) as exc:
            dispatcher.dispatch(_event(seller_id, article_id))

        assert sorted(exc.value.undelivered) == sorted(followers)
        result = exc.value.details["result"]
        assert result.feed_item_id is not None
        assert result.parked_id is not None
        assert switch.batch_calls == 6
        assert svc.notification_store.count_rows() == 0
        (parked,) = svc.retry_store.list_pending()
        assert parked.feed_item_id == result.feed_item_id

        switch.broken = False
        assert dispatcher.redrive() == {"picked": 1, "done": 1, "failed": 0}
    finally:
        dispatcher.close()

    assert svc.retry_store.list_pending() == []
    assert svc.notification_store.count_rows() == 5
    assert len(svc.notification_store.list_feed_items()) == 1


def test_audience_load_failure_is_parked_whole(app):
    seller_id, article_id, followers = _seed(app, followers=3)
    svc = get_services(app)
    down = _dispatcher(app, graph=_DownGraph(svc.graph_store), max_attempts=2)
    try:
        with pytest.raises(FanOutPartialFailure):
            down.dispatch(_event(seller_id, article_id))
    finally:
        down.close()

    assert svc.notification_store.list_feed_items() == []
    (parked,) = svc.retry_store.list_pending()
    assert parked.recipient_ids_json == "null"
    assert parked.feed_item_id is None

    healthy = _dispatcher(app)
    try:
        assert healthy.redrive()["done"] == 1
    finally:
        healthy.close()
    assert len(svc.notification_store.list_feed_items(user_id=seller_id)) == 1
    assert svc.notification_store.count_rows() == len(followers)


def test_background_failure_never_reaches_caller(app):
    seller_id, article_id, followers = _seed(app, followers=3)
    svc = get_services(app)
    dispatcher = _dispatcher(app, notifications=_Switchable(svc.notification_store), max_attempts=1)
    try:
        future = dispatcher.submit(_event(seller_id, article_id))
        assert dispatcher.join(timeout=10)
        result = future.result(timeout=1)
    finally:
        dispatcher.close()

    assert result is not None
    assert not result.complete
    assert sorted(result.undelivered) == sorted(followers)
    assert len(svc.retry_store.list_pending()) == 1


def test_unsupported_event_kind(app):
    dispatcher = _dispatcher(app)
    try:
        with pytest.raises(InvalidOperation):
            dispatcher.dispatch(FanOutEvent(kind=FeedItemType.ACHIEVEMENT, actor_id=1))
    finally:
        dispatcher.close()


def test_notifications_can_live_in_their_own_database(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'listings.db'}")
    monkeypatch.setenv("NOTIFICATIONS_DATABASE_URL", f"sqlite:///{tmp_path/'notifications.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("FANOUT_RETRY_BASE_DELAY", "0")

    app = create_app()
    assert app.extensions["notifications_engine"] is not app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    Base.metadata.create_all(bind=app.extensions["notifications_engine"])

    seller_id, article_id, followers = _seed(app, followers=2)
    with session_scope(app) as s:
        admin = User(email="admin@example.com", password_hash=generate_password_hash("pw"), role="ADMIN")
        s.add(admin)
        s.flush()
        admin_id = admin.id

    svc = get_services(app)
    try:
        decision = svc.moderation.decide(Principal(user_id=admin_id, role="ADMIN"), article_id, "APPROVE")
        assert decision.fanout.result(timeout=10).complete
    finally:
        svc.dispatcher.close()

    with session_scope(app, store="notifications") as s:
        assert s.query(Notification).count() == 2
    for fid in followers:
        (row,) = svc.notifications.list_notifications(Principal(user_id=fid, role="BUYER")).items
        assert row["actor"]["name"] == "Sam"
