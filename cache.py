"""Read-through cache for hot store queries (stale-while-revalidate).

Entries live in an in-memory map and, when ``CACHE_PERSISTENT`` is set, in the
``cache_entry`` table so a restarted worker can answer instantly. Values must
be JSON serializable for the persistent tier.
"""
import logging
import threading
import time

from flask import current_app
from sqlalchemy import true
from sqlalchemy.exc import SQLAlchemyError

from models import db, CacheEntry

logger = logging.getLogger(__name__)


class CacheManager:

    def __init__(self, app=None):
        self._memory = {}
        self._refreshing = set()
        self._lock = threading.Lock()
        self.persistent = False
        self.background_refresh = True
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.persistent = app.config.get('CACHE_PERSISTENT', False)
        self.background_refresh = app.config.get('CACHE_BACKGROUND_REFRESH', True)
        app.extensions['raksetu_cache'] = self

    def get(self, key, max_age=30):
        """Cached value younger than max_age seconds, else None."""
        now = time.time()
        with self._lock:
            entry = self._memory.get(key)
        if entry and now - entry[0] < max_age:
            logger.debug('Memory cache hit: %s', key)
            return entry[1]

        if self.persistent:
            try:
                row = db.session.get(CacheEntry, key)
            except SQLAlchemyError:
                logger.exception('Persistent cache read failed for %s', key)
                db.session.rollback()
                row = None
            if row is not None and now - row.stored_at < max_age:
                logger.debug('Persistent cache hit: %s', key)
                with self._lock:
                    self._memory[key] = (row.stored_at, row.data)
                return row.data

        logger.debug('Cache miss: %s', key)
        return None

    def set(self, key, data):
        stored_at = time.time()
        with self._lock:
            self._memory[key] = (stored_at, data)

        if self.persistent:
            try:
                db.session.merge(CacheEntry(key=key, data=data, stored_at=stored_at))
                db.session.commit()
            except SQLAlchemyError:
                logger.exception('Persistent cache write failed for %s', key)
                db.session.rollback()

    def invalidate(self, *keys):
        with self._lock:
            for key in keys:
                self._memory.pop(key, None)
        if self.persistent and keys:
            self._delete_rows(CacheEntry.key.in_(keys))

    def invalidate_prefix(self, prefix):
        with self._lock:
            for key in [k for k in self._memory if k.startswith(prefix)]:
                del self._memory[key]
        if self.persistent:
            self._delete_rows(CacheEntry.key.startswith(prefix))

    def clear(self):
        with self._lock:
            self._memory.clear()
        if self.persistent:
            self._delete_rows(true())

    def clear_old(self, max_age=3600):
        cutoff = time.time() - max_age
        with self._lock:
            for key in [k for k, (stored_at, _) in self._memory.items() if stored_at < cutoff]:
                del self._memory[key]
        if self.persistent:
            self._delete_rows(CacheEntry.stored_at < cutoff)

    def claim_refresh(self, key):
        """False if a refresh of key is already running."""
        with self._lock:
            if key in self._refreshing:
                return False
            self._refreshing.add(key)
            return True

    def release_refresh(self, key):
        with self._lock:
            self._refreshing.discard(key)

    def _delete_rows(self, criterion):
        try:
            CacheEntry.query.filter(criterion).delete(synchronize_session=False)
            db.session.commit()
        except SQLAlchemyError:
            logger.exception('Persistent cache delete failed')
            db.session.rollback()


cache_manager = CacheManager()


def _refresh(key, query_fn):
    try:
        cache_manager.set(key, query_fn())
    except Exception:
        logger.warning('Background refresh failed for %s', key, exc_info=True)
    finally:
        cache_manager.release_refresh(key)


def _refresh_in_context(app, key, query_fn):
    with app.app_context():
        _refresh(key, query_fn)


def cached_query(key, query_fn, max_age=30):
    """Serve key from cache and refresh it behind the caller's back.

    On a miss the query runs inline; its errors propagate.
    """
    cached = cache_manager.get(key, max_age)
    if cached is not None:
        if not cache_manager.claim_refresh(key):
            logger.debug('Refresh of %s already running', key)
        elif cache_manager.background_refresh:
            app = current_app._get_current_object()
            threading.Thread(target=_refresh_in_context, args=(app, key, query_fn),
                             daemon=True).start()
        else:
            _refresh(key, query_fn)
        return cached

    fresh = query_fn()
    cache_manager.set(key, fresh)
    return fresh
