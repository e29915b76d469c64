from __future__ import annotations

import asyncio
import json

import pytest

from ligo_session.auth_utils import VerificationFailed, VerificationKind
from ligo_session.credential_store import (
    ACCESS_TOKEN_KEY,
    LEGACY_TOKEN_KEY,
    PROFILE_KEY,
    PROFILE_TIME_KEY,
    REFRESH_TOKEN_KEY,
    SESSION_KEYS,
    MemoryBackend,
)
from ligo_session.session_data import Profile, SessionState
from tests._helpers.fake_ligo import FakeClock, FakeLigoServer, make_context


def test_start_without_tokens_is_unauthenticated(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        ctx = make_context(backend, server)
        assert ctx.controller.is_loading is True

        state = await ctx.controller.start()

        assert state == SessionState(is_authenticated=False, user=None, is_loading=False)
        assert server.requests == []
        await ctx.aclose()

    asyncio.run(_run())


def test_start_with_token_resolves_profile(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        backend._data[ACCESS_TOKEN_KEY] = "good-token"
        ctx = make_context(backend, server)

        state = await ctx.controller.start()

        assert state.is_authenticated is True
        assert state.is_loading is False
        assert state.user.name == "Ada Lovelace"
        assert state.user.avatar_url == "https://cdn.example/ada.png"
        assert len(server.calls("/api/user-avatar")) == 1
        await ctx.aclose()

    asyncio.run(_run())


def test_check_auth_is_idempotent(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        backend._data[ACCESS_TOKEN_KEY] = "good-token"
        ctx = make_context(backend, server)

        first = await ctx.controller.check_auth()
        second = await ctx.controller.check_auth()

        assert first == second
        assert len(server.calls("/api/user-avatar")) == 1
        await ctx.aclose()

    asyncio.run(_run())


def test_check_auth_without_token_drops_cached_profile(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        backend._data.update({PROFILE_KEY: {"name": "Ada"}, PROFILE_TIME_KEY: 1})
        ctx = make_context(backend, server)

        await ctx.controller.check_auth()

        assert await ctx.store.get_many([PROFILE_KEY, PROFILE_TIME_KEY]) == {}
        await ctx.aclose()

    asyncio.run(_run())


def test_profile_failure_leaves_user_empty_but_authenticated(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        backend._data[ACCESS_TOKEN_KEY] = "good-token"
        server.profile_status = 500
        ctx = make_context(backend, server)

        state = await ctx.controller.start()

        assert state.is_authenticated is True
        assert state.user is None
        await ctx.aclose()

    asyncio.run(_run())


def test_logout_clears_everything(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        backend._data.update({
            ACCESS_TOKEN_KEY: "good-token",
            REFRESH_TOKEN_KEY: "refresh-1",
            LEGACY_TOKEN_KEY: "legacy",
        })
        ctx = make_context(backend, server)
        await ctx.controller.start()
        assert await ctx.store.get(PROFILE_TIME_KEY) is not None

        state = await ctx.controller.logout()
        await ctx.controller.wait_idle()

        assert await ctx.store.get_many(SESSION_KEYS) == {}
        assert state.is_authenticated is False
        assert state.user is None
        assert ctx.controller.state == state
        await ctx.aclose()

    asyncio.run(_run())


def test_logout_succeeds_when_store_is_down(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        backend._data[ACCESS_TOKEN_KEY] = "good-token"
        ctx = make_context(backend, server)
        await ctx.controller.start()
        backend.available = False

        state = await ctx.controller.logout()

        assert state.is_authenticated is False
        assert state.user is None
        await ctx.aclose()

    asyncio.run(_run())


def test_verify_signs_in_and_force_fetches_profile(backend: MemoryBackend, server: FakeLigoServer, clock: FakeClock) -> None:
    async def _run() -> None:
        server.verify_response = (200, {"access_token": "t1"})
        ctx = make_context(backend, server, clock=clock)
        await ctx.controller.start()
        # A fresh cached profile must not short-circuit the post-login fetch.
        await ctx.profile_cache.write(Profile(name="Old", avatar_url="https://cdn.example/old.png"))

        state = await ctx.controller.verify("a@b.com", "123456")

        assert state.is_authenticated is True
        assert state.user.name == "Ada Lovelace"
        assert await ctx.store.get(ACCESS_TOKEN_KEY) == "t1"
        assert await ctx.store.get(REFRESH_TOKEN_KEY) is None
        profile_calls = server.calls("/api/user-avatar")
        assert len(profile_calls) == 1
        assert server.bearer(profile_calls[0]) == "t1"
        verify_call = server.calls("/api/chrome-extension/verify-code")[0]
        assert json.loads(verify_call.content) == {"email": "a@b.com", "code": "123456"}
        await ctx.aclose()

    asyncio.run(_run())


def test_verify_stores_refresh_token_when_issued(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        ctx = make_context(backend, server)
        await ctx.controller.verify_magic_link("a@b.com", "123456")
        assert await ctx.store.get(REFRESH_TOKEN_KEY) == "r1"
        await ctx.aclose()

    asyncio.run(_run())


def test_failed_verification_leaves_state_untouched(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        server.verify_response = (401, {"error": "Invalid or expired code"})
        ctx = make_context(backend, server)
        before = await ctx.controller.start()

        with pytest.raises(VerificationFailed) as excinfo:
            await ctx.controller.verify("a@b.com", "000000")

        assert excinfo.value.kind is VerificationKind.INVALID_CODE
        assert str(excinfo.value) == "Invalid or expired code"
        assert ctx.controller.state == before
        assert await ctx.store.get_many(SESSION_KEYS) == {}
        await ctx.aclose()

    asyncio.run(_run())


def test_send_verification_code_surfaces_signup_required(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        server.send_code_response = (404, {"error": "new_user_signup_required"})
        ctx = make_context(backend, server)
        with pytest.raises(VerificationFailed) as excinfo:
            await ctx.controller.send_magic_link("new@b.com")
        assert excinfo.value.kind is VerificationKind.NEW_USER_SIGNUP_REQUIRED
        await ctx.aclose()

    asyncio.run(_run())


def test_token_written_elsewhere_signs_in_other_context_without_network(backend: MemoryBackend, clock: FakeClock) -> None:
    async def _run() -> None:
        background_server, panel_server = FakeLigoServer(), FakeLigoServer()
        background = make_context(backend, background_server, name="background", clock=clock)
        panel = make_context(backend, panel_server, name="sidepanel", clock=clock)
        await panel.controller.start()
        assert panel.controller.is_authenticated is False

        await background.profile_cache.write(Profile(name="Ada", avatar_url="https://cdn.example/ada.png"))
        await background.store.set(ACCESS_TOKEN_KEY, "good-token")
        await panel.controller.wait_idle()

        assert panel.controller.is_authenticated is True
        assert panel.controller.user.name == "Ada"
        assert panel_server.requests == []
        await background.aclose()
        await panel.aclose()

    asyncio.run(_run())


def test_logout_elsewhere_signs_out_other_context(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        backend._data.update({ACCESS_TOKEN_KEY: "good-token", REFRESH_TOKEN_KEY: "refresh-1"})
        popup = make_context(backend, server, name="popup")
        panel = make_context(backend, server, name="sidepanel")
        await popup.controller.start()
        await panel.controller.start()
        requests_before = len(server.requests)

        states = []
        panel.controller.subscribe(states.append)
        await popup.controller.logout()
        await panel.controller.wait_idle()

        assert panel.controller.is_authenticated is False
        assert panel.controller.user is None
        assert states[0].is_authenticated is False
        assert len(server.requests) == requests_before
        await popup.aclose()
        await panel.aclose()

    asyncio.run(_run())


def test_removing_access_token_falls_back_to_remaining_legacy_token(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        backend._data.update({ACCESS_TOKEN_KEY: "good-token", LEGACY_TOKEN_KEY: "good-token"})
        ctx = make_context(backend, server)
        await ctx.controller.start()

        await ctx.store.remove(ACCESS_TOKEN_KEY)
        await ctx.controller.wait_idle()

        assert ctx.controller.is_authenticated is True
        assert await ctx.controller.get_token() == "good-token"
        await ctx.aclose()

    asyncio.run(_run())


def test_removing_refresh_token_elsewhere_keeps_session(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        backend._data.update({ACCESS_TOKEN_KEY: "good-token", REFRESH_TOKEN_KEY: "refresh-1"})
        background = make_context(backend, server, name="background")
        panel = make_context(backend, server, name="sidepanel")
        await panel.controller.start()
        user = panel.controller.user
        requests_before = len(server.requests)

        states = []
        panel.controller.subscribe(states.append)
        await background.store.remove(REFRESH_TOKEN_KEY)
        await panel.controller.wait_idle()

        assert states == []
        assert panel.controller.is_authenticated is True
        assert panel.controller.user == user
        assert len(server.requests) == requests_before
        await background.aclose()
        await panel.aclose()

    asyncio.run(_run())


def test_removing_access_token_with_legacy_token_left_never_flips_state(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        backend._data.update({ACCESS_TOKEN_KEY: "good-token", LEGACY_TOKEN_KEY: "good-token"})
        ctx = make_context(backend, server)
        await ctx.controller.start()

        states = []
        ctx.controller.subscribe(states.append)
        await ctx.store.remove_many([ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY])
        await ctx.controller.wait_idle()

        assert all(state.is_authenticated for state in states)
        assert ctx.controller.is_authenticated is True
        await ctx.aclose()

    asyncio.run(_run())


def test_refresh_user_profile_forces_fetch(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        backend._data[ACCESS_TOKEN_KEY] = "good-token"
        ctx = make_context(backend, server)
        await ctx.controller.start()
        server.profile = {**server.profile, "name": "Ada King"}

        user = await ctx.controller.refresh_user_profile()

        assert user.name == "Ada King"
        assert ctx.controller.user.name == "Ada King"
        assert len(server.calls("/api/user-avatar")) == 2
        await ctx.aclose()

    asyncio.run(_run())


def test_refresh_user_profile_without_token_is_a_no_op(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        ctx = make_context(backend, server)
        assert await ctx.controller.refresh_user_profile() is None
        assert server.requests == []
        await ctx.aclose()

    asyncio.run(_run())


def test_context_manager_unsubscribes_on_exit(backend: MemoryBackend, server: FakeLigoServer) -> None:
    async def _run() -> None:
        ctx = make_context(backend, server)
        async with ctx.controller as controller:
            assert controller.is_loading is False
        await ctx.store.set(ACCESS_TOKEN_KEY, "good-token")
        await ctx.controller.wait_idle()
        assert ctx.controller.is_authenticated is False
        await ctx.aclose()

    asyncio.run(_run())
