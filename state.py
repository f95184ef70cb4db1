"""
Application state container

One instance per running app, created in the lifespan and handed to routes
through ``get_state``. Sessions are keyed by auth uid and hold the cart and the
checkout navigation; signing out tears the session down, and sessions left idle
longer than a token's lifetime are reaped on the next lookup.
"""
import threading
import time
from typing import Callable, Dict, List, Optional

import settings
from auth import AuthProvider, Identity
from cart import Cart
from catalog import CatalogStore
from checkout import CheckoutFlow


class Session:
    def __init__(self, uid: str, catalog: CatalogStore, now: float):
        self.uid = uid
        self.cart = Cart(catalog.stock_of)
        self.checkout = CheckoutFlow()
        self.lock = threading.Lock()
        self.last_seen = now


class AppState:
    def __init__(self, catalog: Optional[CatalogStore] = None, auth: Optional[AuthProvider] = None,
                 startup_warning: Optional[str] = None, session_ttl: Optional[float] = None):
        self.catalog = catalog or CatalogStore()
        self.auth = auth or AuthProvider()
        self.startup_warning = startup_warning
        # seconds of inactivity before a session is dropped
        self.session_ttl = settings.TOKEN_EXPIRE_MIN * 60 if session_ttl is None else session_ttl
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self._teardown: List[Callable[[], None]] = []

    def start(self) -> None:
        self.catalog.start()
        self._teardown.append(self.auth.on_auth_state_changed(self._on_auth_state_changed))

    def stop(self) -> None:
        for release in reversed(self._teardown):
            release()
        self._teardown.clear()
        self.catalog.stop()
        with self._lock:
            self._sessions.clear()

    def _on_auth_state_changed(self, uid: str, identity: Optional[Identity]) -> None:
        if identity is None:
            self.end_session(uid)

    def _reap(self, now: float) -> None:
        idle = [uid for uid, session in self._sessions.items() if now - session.last_seen > self.session_ttl]
        for uid in idle:
            del self._sessions[uid]

    def session(self, uid: str, now: Optional[float] = None) -> Session:
        now = time.monotonic() if now is None else now
        with self._lock:
            self._reap(now)
            session = self._sessions.get(uid)
            if session is None:
                session = self._sessions[uid] = Session(uid, self.catalog, now)
            session.last_seen = now
            return session

    def end_session(self, uid: str) -> None:
        with self._lock:
            self._sessions.pop(uid, None)

    def has_session(self, uid: str) -> bool:
        with self._lock:
            return uid in self._sessions

    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)
