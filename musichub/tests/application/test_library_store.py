import asyncio

import pytest

from musichub.application.library_store import LibraryStore
from musichub.application.session_gate import SessionGate
from musichub.crosscutting.metrics import MetricsCollector
from musichub.domain.entities import LibrarySnapshot, Profile, SessionEvent
from musichub.domain.errors import (
    AuthRequiredError,
    NetworkError,
    NotFound,
    PersistenceError,
    ValidationError,
    VerificationRequiredError,
)
from musichub.tests.fakes import (
    UNVERIFIED_USER,
    VERIFIED_USER,
    FakeRepository,
    make_track,
    settle,
)


DEFAULT_COVER = "https://cdn.example/default.jpg"

T1, T2, T3, T4 = (make_track(n) for n in range(1, 5))


def make_store(user=VERIFIED_USER, timeout_sec=1.0):
    gate = SessionGate()
    if user is not None:
        gate.handle_event(SessionEvent('SIGNED_IN', user))
    repository = FakeRepository()
    metrics = MetricsCollector()
    store = LibraryStore(gate, repository, default_cover_url=DEFAULT_COVER,
                         timeout_sec=timeout_sec, metrics=metrics)
    return gate, repository, store, metrics


class TestSync:
    def test_sync_loads_liked_tracks_and_playlists(self):
        gate, repository, store, _ = make_store()
        repository.liked["user-1"] = [T3, T2, T1]
        repository.add_playlist("user-1", "Road trip", [T1, T2])
        repository.add_playlist("user-1", "No cover", cover_url="")
        repository.add_playlist("someone-else", "Not mine")

        snapshot = asyncio.run(store.sync("user-1"))

        assert snapshot.liked_tracks == (T3, T2, T1)
        assert [p.name for p in snapshot.playlists] == ["Road trip", "No cover"]
        assert snapshot.playlists[0].tracks == (T1, T2)
        assert snapshot.playlists[1].cover_url == DEFAULT_COVER
        assert store.owner == "user-1"

    def test_missing_profile_is_created_from_identity(self):
        gate, repository, store, _ = make_store()

        asyncio.run(store.sync("user-1"))

        assert store.profile == Profile("user-1", "listener", "https://img.example/avatar.png")
        assert repository.profiles["user-1"] == store.profile

    def test_existing_profile_is_not_rewritten(self):
        gate, repository, store, _ = make_store()
        repository.profiles["user-1"] = Profile("user-1", "dj")

        asyncio.run(store.sync("user-1"))

        assert store.profile.username == "dj"
        assert "upsert_profile" not in repository.calls

    def test_profile_upsert_failure_does_not_block_sync(self):
        gate, repository, store, _ = make_store()
        repository.liked["user-1"] = [T1]
        repository.failing.add("upsert_profile")

        snapshot = asyncio.run(store.sync("user-1"))

        assert snapshot.liked_tracks == (T1,)
        assert store.profile.username == "listener"

    def test_sync_failure_leaves_snapshot_untouched(self):
        gate, repository, store, metrics = make_store()
        repository.liked["user-1"] = [T1]
        repository.failing.add("get_playlists")

        with pytest.raises(PersistenceError):
            asyncio.run(store.sync("user-1"))

        assert store.snapshot() == LibrarySnapshot()
        assert metrics.count("library.sync_failed") == 1

    def test_sync_superseded_by_sign_out_is_discarded(self):
        gate, repository, store, _ = make_store()
        repository.liked["user-1"] = [T1]

        async def scenario():
            repository.hold("get_liked_tracks")
            task = asyncio.ensure_future(store.sync("user-1"))
            await settle()
            gate.handle_event(SessionEvent('SIGNED_OUT', None))
            store.on_session_changed(gate.session)
            repository.release("get_liked_tracks")
            await task

        asyncio.run(scenario())

        assert store.snapshot() == LibrarySnapshot()
        assert store.owner is None

    def test_session_events_drive_sync_and_reset(self):
        gate, repository, store, _ = make_store(user=None)
        repository.liked["user-1"] = [T1]
        snapshots = []
        store.subscribe(snapshots.append)

        async def scenario():
            gate.subscribe(store.on_session_changed)
            gate.handle_event(SessionEvent('SIGNED_IN', VERIFIED_USER))
            await settle()
            synced = store.snapshot()
            gate.handle_event(SessionEvent('USER_UPDATED', UNVERIFIED_USER))
            return synced

        synced = asyncio.run(scenario())

        assert synced.liked_tracks == (T1,)
        assert store.snapshot() == LibrarySnapshot()
        assert snapshots[-1] == LibrarySnapshot()

    def test_background_sync_failure_is_not_raised(self):
        gate, repository, store, _ = make_store(user=None)
        repository.failing.add("get_profile")

        async def scenario():
            gate.subscribe(store.on_session_changed)
            gate.handle_event(SessionEvent('SIGNED_IN', VERIFIED_USER))
            await settle()
            await store.close()

        asyncio.run(scenario())

        assert store.snapshot() == LibrarySnapshot()


class TestToggleLike:
    def setup_method(self):
        self.gate, self.repository, self.store, self.metrics = make_store()

    def _sync(self, liked):
        self.repository.liked["user-1"] = list(liked)
        asyncio.run(self.store.sync("user-1"))

    def test_like_is_prepended_and_persisted(self):
        self._sync([T1])

        assert asyncio.run(self.store.toggle_like(T2)) is True

        assert self.store.snapshot().liked_tracks == (T2, T1)
        assert self.repository.liked["user-1"] == [T2, T1]

    def test_double_toggle_restores_original_order(self):
        self._sync([T2, T1])

        async def scenario():
            await self.store.toggle_like(T3)
            await self.store.toggle_like(T3)

        asyncio.run(scenario())

        assert self.store.snapshot().liked_tracks == (T2, T1)
        assert self.repository.liked["user-1"] == [T2, T1]

    def test_flip_is_visible_before_remote_write_completes(self):
        self._sync([])

        async def scenario():
            self.repository.hold("toggle_liked")
            task = asyncio.ensure_future(self.store.toggle_like(T2))
            await settle()
            visible = self.store.is_liked(T2)
            self.repository.release("toggle_liked")
            return visible, await task

        visible, result = asyncio.run(scenario())

        assert visible is True
        assert result is True

    def test_failed_unlike_restores_original_position(self):
        self._sync([T1, T2, T3])
        self.repository.failing.add("toggle_liked")
        seen = []
        self.store.subscribe(lambda s: seen.append(s.liked_tracks))

        with pytest.raises(PersistenceError):
            asyncio.run(self.store.toggle_like(T2))

        assert self.store.snapshot().liked_tracks == (T1, T2, T3)
        assert seen == [(T1, T3), (T1, T2, T3)]
        assert self.metrics.count("library.rollbacks") == 1

    def test_failed_like_is_rolled_back(self):
        self._sync([T1])
        self.repository.failing.add("toggle_liked")

        with pytest.raises(PersistenceError):
            asyncio.run(self.store.toggle_like(T4))

        assert self.store.snapshot().liked_tracks == (T1,)

    def test_unexpected_repository_error_is_rolled_back(self):
        self._sync([T1])

        async def broken_toggle(user_id, track):
            raise NetworkError("connection reset")

        self.repository.toggle_liked = broken_toggle

        with pytest.raises(PersistenceError):
            asyncio.run(self.store.toggle_like(T2))

        assert self.store.snapshot().liked_tracks == (T1,)
        assert self.metrics.count("library.rollbacks") == 1

    def test_cancelled_toggle_is_rolled_back(self):
        self._sync([T1])

        async def scenario():
            self.repository.hold("toggle_liked")
            task = asyncio.ensure_future(self.store.toggle_like(T2))
            await settle()
            flipped = self.store.is_liked(T2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return flipped

        assert asyncio.run(scenario()) is True
        assert self.store.snapshot().liked_tracks == (T1,)
        assert self.repository.liked["user-1"] == [T1]

    def test_like_confirmed_during_sync_survives_it(self):
        self.repository.liked["user-1"] = []

        async def scenario():
            self.repository.hold("get_playlists")
            sync = asyncio.ensure_future(self.store.sync("user-1"))
            await settle()
            liked = await self.store.toggle_like(T1)
            self.repository.release("get_playlists")
            await sync
            return liked

        assert asyncio.run(scenario()) is True
        assert self.store.is_liked(T1)
        assert self.repository.liked["user-1"] == [T1]

    def test_unlike_confirmed_during_sync_survives_it(self):
        self._sync([T1, T2])

        async def scenario():
            self.repository.hold("get_playlists")
            sync = asyncio.ensure_future(self.store.sync("user-1"))
            await settle()
            await self.store.toggle_like(T1)
            self.repository.release("get_playlists")
            await sync

        asyncio.run(scenario())

        assert self.store.snapshot().liked_tracks == (T2,)
        assert self.repository.liked["user-1"] == [T2]

    def test_timeout_counts_as_failure(self):
        self.gate, self.repository, self.store, self.metrics = make_store(timeout_sec=0.05)
        self._sync([])

        async def scenario():
            self.repository.hold("toggle_liked")
            await self.store.toggle_like(T1)

        with pytest.raises(PersistenceError):
            asyncio.run(scenario())

        assert not self.store.is_liked(T1)

    def test_same_track_toggles_run_one_at_a_time(self):
        self._sync([])

        async def scenario():
            self.repository.hold("toggle_liked")
            first = asyncio.ensure_future(self.store.toggle_like(T1))
            second = asyncio.ensure_future(self.store.toggle_like(T1))
            await settle()
            in_flight = self.repository.calls.count("toggle_liked")
            self.repository.release("toggle_liked")
            return in_flight, await first, await second

        in_flight, first, second = asyncio.run(scenario())

        assert in_flight == 1
        assert (first, second) == (True, False)
        assert not self.store.is_liked(T1)
        assert self.repository.liked["user-1"] == []

    def test_different_tracks_do_not_wait_for_each_other(self):
        self._sync([])

        async def scenario():
            self.repository.hold("toggle_liked")
            first = asyncio.ensure_future(self.store.toggle_like(T1))
            second = asyncio.ensure_future(self.store.toggle_like(T2))
            await settle()
            in_flight = self.repository.calls.count("toggle_liked")
            self.repository.release("toggle_liked")
            await asyncio.gather(first, second)
            return in_flight

        assert asyncio.run(scenario()) == 2
        assert self.store.is_liked(T1) and self.store.is_liked(T2)

    def test_remote_state_wins_when_it_disagrees(self):
        self._sync([])
        # liked from another device after our sync
        self.repository.liked["user-1"] = [T1]

        assert asyncio.run(self.store.toggle_like(T1)) is False

        assert not self.store.is_liked(T1)

    def test_sign_out_during_write_leaves_library_empty(self):
        self._sync([T1])

        async def scenario():
            self.repository.hold("toggle_liked")
            task = asyncio.ensure_future(self.store.toggle_like(T2))
            await settle()
            self.gate.handle_event(SessionEvent('SIGNED_OUT', None))
            self.store.on_session_changed(self.gate.session)
            self.repository.release("toggle_liked")
            return await task

        asyncio.run(scenario())

        assert self.store.snapshot() == LibrarySnapshot()


class TestGating:
    def _attempt_all(self, store, error_type):
        async def scenario():
            with pytest.raises(error_type):
                await store.toggle_like(T1)
            with pytest.raises(error_type):
                await store.create_playlist("Mix")
            with pytest.raises(error_type):
                await store.delete_playlist("1")
            with pytest.raises(error_type):
                await store.add_song_to_playlist("1", T1)

        asyncio.run(scenario())

    def test_anonymous_mutations_are_rejected(self):
        gate, repository, store, _ = make_store(user=None)

        self._attempt_all(store, AuthRequiredError)

        assert repository.calls == []
        assert store.snapshot() == LibrarySnapshot()

    def test_unverified_mutations_are_rejected(self):
        gate, repository, store, _ = make_store(user=UNVERIFIED_USER)

        self._attempt_all(store, VerificationRequiredError)

        assert repository.calls == []
        assert store.snapshot() == LibrarySnapshot()


class TestPlaylists:
    def setup_method(self):
        self.gate, self.repository, self.store, _ = make_store()
        self.road_trip = self.repository.add_playlist("user-1", "Road trip", [T1])
        asyncio.run(self.store.sync("user-1"))
        self.repository.calls.clear()

    def test_blank_name_is_rejected_locally(self):
        with pytest.raises(ValidationError):
            asyncio.run(self.store.create_playlist("   "))
        assert self.repository.calls == []

    def test_create_adds_empty_playlist_with_default_cover(self):
        playlist = asyncio.run(self.store.create_playlist("  Focus "))

        assert playlist.name == "Focus"
        assert playlist.tracks == ()
        assert playlist.cover_url == DEFAULT_COVER
        assert self.store.playlist(playlist.id) == playlist
        assert [p.name for p in self.store.snapshot().playlists] == ["Road trip", "Focus"]

    def test_create_failure_adds_nothing(self):
        self.repository.failing.add("create_playlist")

        with pytest.raises(PersistenceError):
            asyncio.run(self.store.create_playlist("Focus"))

        assert [p.name for p in self.store.snapshot().playlists] == ["Road trip"]

    def test_delete_waits_for_remote_confirmation(self):
        async def scenario():
            self.repository.hold("delete_playlist")
            task = asyncio.ensure_future(self.store.delete_playlist(self.road_trip.id))
            await settle()
            still_listed = self.store.playlist(self.road_trip.id) is not None
            self.repository.release("delete_playlist")
            await task
            return still_listed

        assert asyncio.run(scenario()) is True
        assert self.store.playlist(self.road_trip.id) is None

    def test_delete_failure_keeps_playlist(self):
        self.repository.failing.add("delete_playlist")

        with pytest.raises(PersistenceError):
            asyncio.run(self.store.delete_playlist(self.road_trip.id))

        assert self.store.playlist(self.road_trip.id) is not None

    def test_unknown_playlist_is_not_found(self):
        with pytest.raises(NotFound):
            asyncio.run(self.store.delete_playlist("missing"))
        with pytest.raises(NotFound):
            asyncio.run(self.store.add_song_to_playlist("missing", T2))
        assert self.repository.calls == []

    def test_add_song_appends_and_allows_duplicates(self):
        async def scenario():
            await self.store.add_song_to_playlist(self.road_trip.id, T2)
            return await self.store.add_song_to_playlist(self.road_trip.id, T2)

        updated = asyncio.run(scenario())

        assert updated.tracks == (T1, T2, T2)
        assert self.store.playlist(self.road_trip.id).tracks == (T1, T2, T2)
        assert self.repository.playlists[self.road_trip.id].tracks == (T1, T2, T2)

    def test_add_song_failure_changes_nothing(self):
        self.repository.failing.add("add_track_to_playlist")

        with pytest.raises(PersistenceError):
            asyncio.run(self.store.add_song_to_playlist(self.road_trip.id, T2))

        assert self.store.playlist(self.road_trip.id).tracks == (T1,)

    def test_add_song_after_sign_out_returns_none(self):
        async def scenario():
            self.repository.hold("add_track_to_playlist")
            task = asyncio.ensure_future(self.store.add_song_to_playlist(self.road_trip.id, T2))
            await settle()
            self.gate.handle_event(SessionEvent('SIGNED_OUT', None))
            self.store.on_session_changed(self.gate.session)
            self.repository.release("add_track_to_playlist")
            return await task

        assert asyncio.run(scenario()) is None
        assert self.store.snapshot() == LibrarySnapshot()
