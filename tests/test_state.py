from catalog import CatalogStore
from state import AppState


def offline_catalog():
    return CatalogStore(subscribe=lambda collection, query, on_data, on_error: lambda: None)


def test_session_is_reused_for_the_same_identity():
    state = AppState(catalog=offline_catalog())
    assert state.session("a", now=0) is state.session("a", now=10)


def test_idle_sessions_are_reaped():
    state = AppState(catalog=offline_catalog(), session_ttl=60)
    state.session("a", now=0)
    state.session("b", now=50)
    state.session("a", now=55)
    state.session("c", now=120)
    assert not state.has_session("b")
    assert not state.has_session("a")
    assert state.has_session("c")

    state.session("c", now=170)
    assert state.session_count() == 1


def test_activity_keeps_a_session_alive():
    state = AppState(catalog=offline_catalog(), session_ttl=60)
    for now in range(0, 600, 30):
        cart = state.session("a", now=now).cart
    assert cart is state.session("a", now=650).cart


def test_sign_out_ends_session():
    state = AppState(catalog=offline_catalog())
    state.start()
    token, identity = state.auth.sign_in_anonymously()
    state.session(identity.uid)
    state.auth.sign_out(token)
    assert not state.has_session(identity.uid)
    state.stop()
