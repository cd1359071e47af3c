from __future__ import annotations

import atexit
from dataclasses import dataclass

from flask import Flask, current_app

from app.closet.modules.fanout.dispatcher import FanOutDispatcher
from app.closet.modules.fanout.store import SqlFanOutRetryStore
from app.closet.modules.listings.service import ListingService
from app.closet.modules.listings.store import SqlListingStore
from app.closet.modules.moderation.service import ModerationService
from app.closet.modules.notifications.service import NotificationReadModel
from app.closet.modules.notifications.store import SqlNotificationStore
from app.closet.modules.social.service import SocialService
from app.closet.modules.social.store import SqlSocialGraphStore
from app.closet.users import SqlUserDirectory


@dataclass
class Services:
    listing_store: SqlListingStore
    graph_store: SqlSocialGraphStore
    notification_store: SqlNotificationStore
    retry_store: SqlFanOutRetryStore
    users: SqlUserDirectory
    dispatcher: FanOutDispatcher
    moderation: ModerationService
    listings: ListingService
    social: SocialService
    notifications: NotificationReadModel


def build_services(config: dict, listing_sm, notifications_sm) -> Services:
    """Wire stores into components. Everything is injected; nothing is global."""
    listing_store = SqlListingStore(listing_sm, tx_timeout_seconds=config.get("MODERATION_TX_TIMEOUT_SECONDS"))
    graph_store = SqlSocialGraphStore(listing_sm)
    notification_store = SqlNotificationStore(
        notifications_sm, statement_timeout_seconds=config.get("FANOUT_BATCH_TIMEOUT_SECONDS")
    )
    retry_store = SqlFanOutRetryStore(notifications_sm)
    users = SqlUserDirectory(listing_sm)

    dispatcher = FanOutDispatcher(
        graph_store,
        notification_store,
        retry_store,
        batch_size=int(config.get("FANOUT_BATCH_SIZE") or 500),
        batch_timeout_seconds=float(config.get("FANOUT_BATCH_TIMEOUT_SECONDS") or 15.0),
        max_attempts=int(config.get("FANOUT_MAX_ATTEMPTS") or 4),
        retry_base_delay=float(config.get("FANOUT_RETRY_BASE_DELAY") or 0.0),
        retry_max_delay=float(config.get("FANOUT_RETRY_MAX_DELAY") or 30.0),
        workers=int(config.get("FANOUT_WORKERS") or 4),
    )
    return Services(
        listing_store=listing_store,
        graph_store=graph_store,
        notification_store=notification_store,
        retry_store=retry_store,
        users=users,
        dispatcher=dispatcher,
        moderation=ModerationService(listing_store, dispatcher),
        listings=ListingService(listing_store, dispatcher),
        social=SocialService(graph_store, users, notification_store, dispatcher),
        notifications=NotificationReadModel(
            notification_store, users, retention_days=int(config.get("RETENTION_DAYS") or 30)
        ),
    )


def init_services(app: Flask) -> Services:
    services = build_services(
        app.config,
        app.extensions["sqlalchemy_sessionmaker"],
        app.extensions["notifications_sessionmaker"],
    )
    app.extensions["closet_services"] = services
    atexit.register(services.dispatcher.close)
    return services


def get_services(app: Flask | None = None) -> Services:
    return (app or current_app).extensions["closet_services"]
