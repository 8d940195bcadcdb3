import asyncio
import random
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fakes import FakeSwarmEngine, info_hash_for, make_session, make_settings, make_torrent

from torrent_stream import instrumentation
from torrent_stream.engine.base import DuplicateTorrentError, SwarmEngineError
from torrent_stream.lifecycle import LifecycleManager, LifecycleState

GRACE_MS = 100


class LifecycleTestCase(unittest.IsolatedAsyncioTestCase):
    seed_time_ms = GRACE_MS

    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.settings = make_settings(self.tmp.name, seed_time_ms=self.seed_time_ms)
        self.settings.seed_dir.mkdir(parents=True)
        self.engine = FakeSwarmEngine()
        self.manager = LifecycleManager(self.engine, self.settings)

    async def asyncTearDown(self):
        await self.manager.close()
        self.tmp.cleanup()

    async def add_session(self, name: str = "abc"):
        session = make_session(name)
        uri = self.engine.register(session)
        live = await self.manager.get_or_add(uri)
        assert live is not None
        return live

    async def wait_past_grace(self):
        await asyncio.sleep(self.settings.seed_time * 2)
        # let the removal task finish
        for _ in range(5):
            await asyncio.sleep(0)


class TestStreamCounting(LifecycleTestCase):
    async def test_scenario_open_open_close_close_open(self):
        self.manager.stream_opened("abc", "video.mkv")
        self.manager.stream_opened("abc", "video.mkv")
        self.manager.stream_closed("abc", "video.mkv")
        self.assertEqual(1, self.manager.open_streams("abc"))
        self.assertEqual(LifecycleState.ACTIVE, self.manager.state("abc"))
        self.assertIsNone(self.manager.deadline("abc"))

        loop = asyncio.get_running_loop()
        before = loop.time()
        self.manager.stream_closed("abc", "video.mkv")
        self.assertEqual(0, self.manager.open_streams("abc"))
        self.assertEqual(LifecycleState.DRAINING, self.manager.state("abc"))
        deadline = self.manager.deadline("abc")
        assert deadline is not None
        self.assertAlmostEqual(before + self.settings.seed_time, deadline, delta=0.05)

        self.manager.stream_opened("abc", "video.mkv")
        self.assertEqual(1, self.manager.open_streams("abc"))
        self.assertEqual(LifecycleState.ACTIVE, self.manager.state("abc"))
        self.assertIsNone(self.manager.deadline("abc"))

    async def test_identifiers_are_case_insensitive(self):
        info_hash = info_hash_for("abc")
        self.manager.stream_opened(info_hash.upper(), "video.mkv")
        self.assertEqual(1, self.manager.open_streams(info_hash))

    async def test_no_entry_without_streams_or_timer(self):
        self.assertIsNone(self.manager.state("abc"))
        self.assertEqual(0, self.manager.open_streams("abc"))

    async def test_repeated_closes_keep_a_single_timer(self):
        self.manager.stream_opened("abc", "video.mkv")
        with mock.patch.object(
            asyncio.get_running_loop(), "call_later", wraps=asyncio.get_running_loop().call_later
        ) as call_later:
            self.manager.stream_closed("abc", "video.mkv")
            deadline = self.manager.deadline("abc")
            for _ in range(5):
                self.manager.stream_closed("abc", "video.mkv")
            call_later.assert_called_once()
        self.assertEqual(deadline, self.manager.deadline("abc"))
        self.assertEqual(0, self.manager.open_streams("abc"))

    async def test_unmatched_close_clamps_to_zero_and_arms(self):
        self.manager.stream_closed("abc", "video.mkv")
        self.assertEqual(0, self.manager.open_streams("abc"))
        self.assertEqual(LifecycleState.DRAINING, self.manager.state("abc"))

        self.manager.stream_opened("abc", "video.mkv")
        self.assertEqual(1, self.manager.open_streams("abc"))

    async def test_total_open_streams(self):
        self.manager.stream_opened("abc", "a.mkv")
        self.manager.stream_opened("abc", "a.mkv")
        self.manager.stream_opened("def", "b.mkv")
        self.assertEqual(3, self.manager.total_open_streams())


class TestRandomSequences(LifecycleTestCase):
    # long enough that nothing fires during the test
    seed_time_ms = 60_000

    async def test_count_and_timer_follow_the_replayed_sequence(self):
        rng = random.Random(1234)
        for _ in range(50):
            info_hash = f"{rng.getrandbits(160):040x}"
            count = 0
            closed_since_open = False
            for _ in range(rng.randint(1, 30)):
                if rng.random() < 0.5:
                    self.manager.stream_opened(info_hash, "file")
                    count += 1
                    closed_since_open = False
                else:
                    self.manager.stream_closed(info_hash, "file")
                    count = max(count - 1, 0)
                    closed_since_open = True

                self.assertEqual(count, self.manager.open_streams(info_hash))
                timer_pending = self.manager.state(info_hash) == LifecycleState.DRAINING
                self.assertEqual(count == 0 and closed_since_open, timer_pending)


class TestTeardown(LifecycleTestCase):
    async def test_destroys_once_and_deletes_seed_file(self):
        session = await self.add_session("abc")
        seed_path = self.settings.seed_path(session.name)
        seed_path.write_bytes(b"seed")

        self.manager.stream_opened(session.info_hash, "video.mkv")
        self.manager.stream_opened(session.info_hash, "video.mkv")
        self.manager.stream_closed(session.info_hash, "video.mkv")
        self.manager.stream_closed(session.info_hash, "video.mkv")

        with mock.patch.object(
            self.engine, "destroy", wraps=self.engine.destroy
        ) as destroy, mock.patch.object(
            Path, "unlink", autospec=True, side_effect=Path.unlink
        ) as unlink:
            await self.wait_past_grace()
            destroy.assert_called_once()
            self.assertEqual(session.info_hash, destroy.call_args.args[0].info_hash)
            unlink.assert_called_once_with(seed_path)

        self.assertEqual([session.info_hash], self.engine.destroyed)
        self.assertFalse(seed_path.exists())
        self.assertIsNone(self.manager.state(session.info_hash))
        self.assertIsNone(self.engine.get(session.info_hash))

    async def test_destroy_respects_keep_downloaded_files(self):
        self.manager.settings = self.settings.model_copy(update={"keep_downloaded_files": True})
        session = await self.add_session("abc")
        with mock.patch.object(self.engine, "destroy", wraps=self.engine.destroy) as destroy:
            self.manager.stream_closed(session.info_hash, "video.mkv")
            await self.wait_past_grace()
        self.assertFalse(destroy.call_args.kwargs["destroy_store"])

    async def test_opening_before_expiry_cancels_teardown(self):
        session = await self.add_session("abc")
        self.manager.stream_opened(session.info_hash, "video.mkv")
        self.manager.stream_closed(session.info_hash, "video.mkv")
        await asyncio.sleep(self.settings.seed_time / 2)
        self.manager.stream_opened(session.info_hash, "video.mkv")

        await self.wait_past_grace()
        self.assertEqual([], self.engine.destroyed)
        self.assertIs(session, self.engine.get(session.info_hash))
        self.assertEqual(LifecycleState.ACTIVE, self.manager.state(session.info_hash))

        self.manager.stream_closed(session.info_hash, "video.mkv")
        await self.wait_past_grace()
        self.assertEqual([session.info_hash], self.engine.destroyed)

    async def test_missing_seed_file_does_not_block_teardown(self):
        session = await self.add_session("abc")
        self.manager.stream_closed(session.info_hash, "video.mkv")
        await self.wait_past_grace()
        self.assertEqual([session.info_hash], self.engine.destroyed)
        self.assertIsNone(self.manager.state(session.info_hash))

    async def test_seed_file_permission_error_is_swallowed(self):
        session = await self.add_session("abc")
        self.manager.stream_closed(session.info_hash, "video.mkv")
        with mock.patch.object(Path, "unlink", side_effect=PermissionError("denied")):
            await self.wait_past_grace()
        self.assertEqual([session.info_hash], self.engine.destroyed)
        self.assertIsNone(self.manager.state(session.info_hash))

    async def test_timer_for_unknown_session_just_drops_the_entry(self):
        self.manager.stream_opened("abc", "video.mkv")
        self.manager.stream_closed("abc", "video.mkv")
        await self.wait_past_grace()
        self.assertEqual([], self.engine.destroyed)
        self.assertIsNone(self.manager.state("abc"))

    async def test_destroy_failure_is_not_fatal(self):
        session = await self.add_session("abc")
        self.engine.destroy_error = SwarmEngineError("boom")
        self.manager.stream_closed(session.info_hash, "video.mkv")
        await self.wait_past_grace()
        self.assertIsNone(self.manager.state(session.info_hash))

    async def test_stream_opened_during_destroy_does_not_resurrect(self):
        session = await self.add_session("abc")
        self.engine.destroy_delay = 0.05
        self.manager.stream_closed(session.info_hash, "video.mkv")
        await asyncio.sleep(self.settings.seed_time + 0.02)
        self.assertEqual(LifecycleState.REMOVING, self.manager.state(session.info_hash))

        self.manager.stream_opened(session.info_hash, "video.mkv")
        self.assertEqual(LifecycleState.REMOVING, self.manager.state(session.info_hash))

        await self.manager.wait_for_removal(session.info_hash)
        self.assertTrue(session.destroyed)
        self.assertEqual(LifecycleState.ACTIVE, self.manager.state(session.info_hash))
        self.assertEqual(1, self.manager.open_streams(session.info_hash))

    async def test_get_or_add_during_destroy_returns_a_new_session(self):
        old = await self.add_session("abc")
        uri = self.engine.register(make_session("abc"))
        self.engine.destroy_delay = 0.05
        self.manager.stream_closed(old.info_hash, "video.mkv")
        await asyncio.sleep(self.settings.seed_time + 0.02)
        self.assertEqual(LifecycleState.REMOVING, self.manager.state(old.info_hash))

        new = await self.manager.get_or_add(uri)
        assert new is not None
        self.assertIsNot(old, new)
        self.assertTrue(old.destroyed)
        self.assertFalse(new.destroyed)
        self.assertEqual([old.info_hash, old.info_hash], self.engine.added)

    async def test_torrent_file_during_destroy_returns_a_new_session(self):
        seed_path = self.settings.seed_path("abc")
        seed_path.write_bytes(make_torrent("abc"))
        old = await self.manager.get_or_add(str(seed_path))
        assert old is not None
        self.engine.destroy_delay = 0.1
        self.manager.stream_closed(old.info_hash, "video.mkv")
        await asyncio.sleep(self.settings.seed_time + 0.02)
        self.assertEqual(LifecycleState.REMOVING, self.manager.state(old.info_hash))

        new = await self.manager.get_or_add(str(seed_path))
        assert new is not None
        self.assertIsNot(old, new)
        self.assertTrue(old.destroyed)
        self.assertFalse(new.destroyed)
        self.assertIs(new, self.engine.get(old.info_hash))
        # still needed by the new session
        self.assertTrue(seed_path.exists())

    async def test_duplicate_while_removing_waits_and_retries(self):
        old = await self.add_session("abc")
        uri = self.engine.register(make_session("abc"))
        self.engine.destroy_delay = 0.05
        self.manager.stream_closed(old.info_hash, "video.mkv")
        await asyncio.sleep(self.settings.seed_time + 0.02)
        self.assertEqual(LifecycleState.REMOVING, self.manager.state(old.info_hash))

        real_add = self.engine.add
        calls = []

        async def add_racing_teardown(source, options, stop=None):
            calls.append(source)
            if len(calls) == 1:
                raise DuplicateTorrentError(old.info_hash)
            return await real_add(uri, options, stop)

        with mock.patch.object(self.engine, "add", side_effect=add_racing_teardown):
            new = await self.manager.get_or_add("https://example.tld/abc.torrent")

        assert new is not None
        self.assertIsNot(old, new)
        self.assertTrue(old.destroyed)
        self.assertEqual(2, len(calls))

    async def test_close_resets_open_streams_gauge(self):
        before = instrumentation.registry().get_sample_value("open_streams")
        self.manager.stream_opened("abc", "video.mkv")
        self.manager.stream_opened("def", "video.mkv")
        await self.manager.close()
        self.assertEqual(before, instrumentation.registry().get_sample_value("open_streams"))

    async def test_close_cancels_pending_timers(self):
        session = await self.add_session("abc")
        self.manager.stream_closed(session.info_hash, "video.mkv")
        await self.manager.close()
        await self.wait_past_grace()
        self.assertEqual([], self.engine.destroyed)


class TestGetOrAdd(LifecycleTestCase):
    async def test_returns_live_session_without_adding(self):
        session = await self.add_session("abc")
        uri = self.engine.register(make_session("abc"))
        self.assertIs(session, await self.manager.get_or_add(uri))
        self.assertEqual([session.info_hash], self.engine.added)

    async def test_timeout_returns_none(self):
        result = await self.manager.get_or_add(f"magnet:?xt=urn:btih:{info_hash_for('nobody')}")
        self.assertIsNone(result)

    async def test_engine_error_returns_none(self):
        session = make_session("abc")
        uri = self.engine.register(session)
        self.engine.failing[uri] = SwarmEngineError("bad uri")
        self.assertIsNone(await self.manager.get_or_add(uri))

    async def test_duplicate_error_resolves_existing_session(self):
        session = await self.add_session("abc")
        uri = "/seed/abc.torrent"
        self.engine.failing[uri] = DuplicateTorrentError(session.info_hash)
        self.assertIs(session, await self.manager.get_or_add(uri))

    async def test_duplicate_error_is_recognized_by_message(self):
        session = await self.add_session("abc")
        uri = self.engine.register(make_session("abc"))
        self.engine.failing[uri] = RuntimeError("Cannot add duplicate torrent")
        # a concurrent request added it between the lookup and the add
        with mock.patch.object(self.engine, "get", side_effect=[None, session]):
            self.assertIs(session, await self.manager.get_or_add(uri))

    async def test_adds_with_streaming_options(self):
        session = make_session("abc")
        uri = self.engine.register(session)
        with mock.patch.object(self.engine, "add", wraps=self.engine.add) as add:
            await self.manager.get_or_add(uri)
        options = add.call_args.args[1]
        self.assertEqual(self.settings.download_dir, options.save_path)
        self.assertTrue(options.deselect)
        self.assertTrue(options.destroy_store)
