from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, g
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def build_engine(db_url: str, *, timeout_seconds: float = 10.0, debug_checkout: bool = False, logger=None) -> Engine:
    is_postgres = db_url.startswith("postgres")
    engine_kwargs: dict[str, object] = {
        "future": True,
        "pool_pre_ping": True,
    }
    if is_postgres:
        engine_kwargs.update(
            {
                "pool_recycle": 1800,
                "pool_size": 5,
                "max_overflow": 10,
                "pool_timeout": 30,
            }
        )
    elif db_url.startswith("sqlite"):
        # Fan-out runs on worker threads; the busy timeout bounds lock waits.
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": timeout_seconds}
    engine = create_engine(db_url, **engine_kwargs)
    if debug_checkout and logger is not None:
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            logger.debug("DB connection checkout from pool")
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    notifications_url = app.config.get("NOTIFICATIONS_DATABASE_URL") or db_url
    timeout = float(app.config.get("MODERATION_TX_TIMEOUT_SECONDS") or 10.0)
    debug_checkout = app.config.get("ENV") != "production"

    engine = build_engine(db_url, timeout_seconds=timeout, debug_checkout=debug_checkout, logger=app.logger)
    if notifications_url == db_url:
        notifications_engine = engine
    else:
        notifications_engine = build_engine(
            notifications_url,
            timeout_seconds=float(app.config.get("FANOUT_BATCH_TIMEOUT_SECONDS") or 15.0),
            debug_checkout=debug_checkout,
            logger=app.logger,
        )

    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = build_sessionmaker(engine)
    app.extensions["notifications_engine"] = notifications_engine
    app.extensions["notifications_sessionmaker"] = build_sessionmaker(notifications_engine)


def apply_statement_timeout(s: Session, seconds: float | None) -> None:
    """
    Bound every statement of the current transaction.
    Postgres honours SET LOCAL; SQLite relies on the connect-time busy timeout.
    """
    if not seconds:
        return
    if s.get_bind().dialect.name == "postgresql":
        s.execute(text(f"SET LOCAL statement_timeout = {int(seconds * 1000)}"))


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers.
    """
    if hasattr(g, "db_session") and g.db_session is not None:
        return g.db_session
    if app is None:
        from flask import current_app

        app = current_app
    sm = app.extensions["sqlalchemy_sessionmaker"]
    g.db_session = sm()  # type: ignore[assignment]
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        try:
            s.close()
        except Exception:
            pass
        g.db_session = None


@contextmanager
def session_scope(app: Flask, *, store: str = "sqlalchemy") -> Generator[Session, None, None]:
    """
    Non-request helper for scripts and tests: yields a session and commits/rolls back.
    Pass store="notifications" to target the notification/feed database.
    """
    sm = app.extensions[f"{store}_sessionmaker"]
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
