
import unittest
from unittest.mock import patch, MagicMock, AsyncMock
import sys
import asyncio
from pathlib import Path
from datetime import timedelta

# Add project root to path to allow imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from view import DropsView
from events import ProgressEvent
from sources import FetchResult
from constants import QueueState
from exceptions import CommandFailed
from mine_all import MineAllQueue, QueueController, StartResult, reward_done
from inventory import Campaign, Inventory, MiningStatus, Progress, Reward, Statistics


def campaign(campaign_id, minutes, game_name="Game A"):
    return Campaign({
        "id": campaign_id,
        "name": f"Campaign {campaign_id}",
        "game_id": f"id-{game_name}",
        "game_name": game_name,
        "time_based_drops": [
            {"id": f"r-{campaign_id}", "name": f"Reward {campaign_id}",
             "required_minutes_watched": minutes},
        ],
    })


def fetch_result(campaigns, progress=(), mining_status=None):
    return FetchResult(
        list(campaigns),
        list(progress),
        Inventory.empty(),
        Statistics.empty(),
        mining_status if mining_status is not None else MiningStatus.idle(),
    )


def make_fetcher():
    fetcher = MagicMock()
    fetcher.start_campaign_mining = AsyncMock()
    fetcher.stop_mining = AsyncMock()
    fetcher.update_drops_settings = AsyncMock()
    return fetcher


class TestRewardDone(unittest.TestCase):
    def setUp(self):
        self.reward = Reward("c1", {"id": "r1", "required_minutes_watched": 30})

    def test_not_started(self):
        self.assertFalse(reward_done(self.reward, None))

    def test_watched(self):
        self.assertTrue(reward_done(self.reward, Progress.new("c1", "r1", 30, 30)))
        self.assertFalse(reward_done(self.reward, Progress.new("c1", "r1", 29, 30)))

    def test_claimed(self):
        self.assertTrue(reward_done(self.reward, Progress.new("c1", "r1", 0, 30, is_claimed=True)))

    def test_not_time_gated(self):
        reward = Reward("c1", {"id": "r1", "required_minutes_watched": 0})
        self.assertTrue(reward_done(reward, None))


class TestQueueController(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.campaigns = [campaign("c1", 30), campaign("c2", 60), campaign("c3", 60)]
        self.view = DropsView()
        self.view.rebuild(fetch_result(
            self.campaigns,
            [
                Progress.new("c1", "r-c1", 30, 30),
                Progress.new("c2", "r-c2", 48, 60),
            ],
        ))
        self.fetcher = make_fetcher()
        self.output = MagicMock()
        self.controller = QueueController(self.view, self.fetcher, self.output)

    def started(self):
        return [c.args[0] for c in self.fetcher.start_campaign_mining.await_args_list]

    def test_plan_skips_complete_and_orders_by_progress(self):
        planned = self.controller.plan(self.campaigns)
        self.assertEqual([c.id for c in planned], ["c2", "c3"])

    def test_plan_keeps_order_on_ties(self):
        campaigns = [campaign("c4", 60), campaign("c5", 60), campaign("c6", 60)]
        self.assertEqual(
            [c.id for c in self.controller.plan(campaigns)], ["c4", "c5", "c6"]
        )

    def test_plan_skips_rewards_without_watch_time(self):
        # nothing to watch and no progress reported: counts as done
        untimed = campaign("c4", 0)
        self.assertIsNone(self.view.live.get_progress("r-c4"))
        self.assertTrue(self.controller.is_complete(untimed))
        planned = self.controller.plan([untimed, self.campaigns[2]])
        self.assertEqual([c.id for c in planned], ["c3"])

    def test_progress_score(self):
        self.assertAlmostEqual(self.controller.progress_score(self.campaigns[1]), 0.8)
        self.assertEqual(self.controller.progress_score(self.campaigns[2]), -1)

    async def test_start(self):
        result = await self.controller.start("game a")
        self.assertIs(result, StartResult.STARTED)
        self.assertIs(self.controller.state, QueueState.RUNNING)
        self.assertEqual(self.controller.queue.campaign_ids, ["c2", "c3"])
        self.assertEqual(self.started(), ["c2"])
        # c1 is complete, so it's never started
        self.assertNotIn("c1", self.started())
        self.fetcher.stop_mining.assert_not_awaited()

    async def test_start_nothing_to_do(self):
        self.view.rebuild(fetch_result(
            self.campaigns,
            [
                Progress.new("c1", "r-c1", 30, 30),
                Progress.new("c2", "r-c2", 60, 60, is_claimed=True),
                Progress.new("c3", "r-c3", 60, 60),
            ],
        ))
        result = await self.controller.start("Game A")
        self.assertIs(result, StartResult.NOTHING_TO_DO)
        self.assertIs(self.controller.state, QueueState.COMPLETED)
        self.assertIsNone(self.controller.queue)
        self.fetcher.start_campaign_mining.assert_not_awaited()

    async def test_start_unknown_game(self):
        result = await self.controller.start("Game Z")
        self.assertIs(result, StartResult.NOTHING_TO_DO)
        self.fetcher.start_campaign_mining.assert_not_awaited()

    async def test_start_stops_current_mining_first(self):
        self.view.apply_mining_status(MiningStatus({"is_mining": True}))
        await self.controller.start("Game A")
        self.fetcher.stop_mining.assert_awaited_once()
        names = [c[0] for c in self.fetcher.mock_calls]
        self.assertLess(names.index("stop_mining"), names.index("start_campaign_mining"))

    async def test_start_ignores_failed_stop(self):
        self.view.apply_mining_status(MiningStatus({"is_mining": True}))
        self.fetcher.stop_mining.side_effect = CommandFailed("stop_auto_mining", "nope")
        result = await self.controller.start("Game A")
        self.assertIs(result, StartResult.STARTED)
        self.assertEqual(self.started(), ["c2"])

    async def test_start_disables_auto_mining(self):
        settings = MagicMock()
        settings.auto_mining_enabled = True
        settings.drops_settings.return_value = {"auto_mining_enabled": False}
        controller = QueueController(self.view, self.fetcher, self.output, settings=settings)
        await controller.start("Game A")
        self.assertFalse(settings.auto_mining_enabled)
        self.fetcher.update_drops_settings.assert_awaited_once_with(
            {"auto_mining_enabled": False}
        )

    async def test_start_failure_aborts(self):
        self.fetcher.start_campaign_mining.side_effect = CommandFailed(
            "start_campaign_mining", "no channels"
        )
        result = await self.controller.start("Game A")
        self.assertIs(result, StartResult.FAILED)
        self.assertIs(self.controller.state, QueueState.ABORTED)
        self.assertIsNone(self.controller.queue)

    async def test_advance_until_completed(self):
        await self.controller.start("Game A")
        await self.controller.advance()
        self.assertIs(self.controller.state, QueueState.RUNNING)
        await self.controller.advance()
        self.assertIs(self.controller.state, QueueState.COMPLETED)
        self.assertIsNone(self.controller.queue)
        self.assertEqual(self.started(), ["c2", "c3"])
        # further advances do nothing
        await self.controller.advance()
        self.assertEqual(self.started(), ["c2", "c3"])

    async def test_stale_advance_is_ignored(self):
        await self.controller.start("Game A")
        old_queue = self.controller.queue
        self.controller.discard()
        self.assertIs(self.controller.state, QueueState.ABORTED)
        await self.controller.advance(old_queue)
        self.assertEqual(self.started(), ["c2"])
        self.assertEqual(old_queue.index, 0)

    async def test_discard_without_run(self):
        self.controller.discard()
        self.assertIs(self.controller.state, QueueState.IDLE)
        self.output.toast.assert_not_called()

    async def test_observe_advances_after_completion(self):
        await self.controller.start("Game A")
        self.view.apply_mining_status(MiningStatus({"is_mining": True}))
        self.view.apply_progress_event(ProgressEvent.new("r-c2", 60, 60, campaign_id="c2"))
        with patch("mine_all.SETTLE_DELAY", timedelta(0)):
            self.controller.observe()
        pending = self.controller._pending
        self.assertIsNotNone(pending)
        # observing again doesn't schedule a second advance for the same step
        self.controller.observe()
        self.assertIs(self.controller._pending, pending)
        await pending
        self.assertEqual(self.started(), ["c2", "c3"])
        self.assertEqual(self.controller.queue.index, 1)

    async def test_observe_needs_mining(self):
        await self.controller.start("Game A")
        self.view.apply_progress_event(ProgressEvent.new("r-c2", 60, 60, campaign_id="c2"))
        self.controller.observe()
        self.assertIsNone(self.controller._pending)

    async def test_observe_ignores_unfinished(self):
        await self.controller.start("Game A")
        self.view.apply_mining_status(MiningStatus({"is_mining": True}))
        self.view.apply_progress_event(ProgressEvent.new("r-c2", 50, 60, campaign_id="c2"))
        self.controller.observe()
        self.assertIsNone(self.controller._pending)

    async def test_observe_skips_missing_campaign(self):
        await self.controller.start("Game A")
        # c2 is gone after the next fetch
        self.view.rebuild(fetch_result(
            [self.campaigns[0], self.campaigns[2]],
            mining_status=MiningStatus({"is_mining": True}),
        ))
        self.controller.observe()
        await self.controller._pending
        self.assertEqual(self.started(), ["c2", "c3"])

    async def test_delayed_advance_after_stop(self):
        await self.controller.start("Game A")
        self.view.apply_mining_status(MiningStatus({"is_mining": True}))
        self.view.apply_progress_event(ProgressEvent.new("r-c2", 60, 60, campaign_id="c2"))
        self.controller.observe()
        pending = self.controller._pending
        self.controller.discard()
        with self.assertRaises(asyncio.CancelledError):
            await pending
        self.assertEqual(self.started(), ["c2"])


class TestDropsView(unittest.TestCase):
    def setUp(self):
        self.view = DropsView()
        self.view.rebuild(fetch_result(
            [campaign("c1", 30)],
            [Progress.new("c1", "r-c1", 10, 30)],
            mining_status=MiningStatus({"is_mining": True}),
        ))

    def test_failed_rebuild_keeps_previous_view(self):
        campaigns, games = self.view.campaigns, self.view.games
        progress, status = self.view.progress, self.view.mining_status
        with patch("aggregator.rebuild", side_effect=RuntimeError("broken")):
            with self.assertRaises(RuntimeError):
                self.view.rebuild(fetch_result(
                    [campaign("c2", 60, game_name="Game B")],
                    [Progress.new("c2", "r-c2", 5, 60)],
                ))
        self.assertIs(self.view.campaigns, campaigns)
        self.assertIs(self.view.games, games)
        self.assertIs(self.view.progress, progress)
        self.assertIs(self.view.mining_status, status)
        self.assertIsNone(self.view.live.find_reward("r-c2"))

    def test_failed_update_keeps_live_state(self):
        progress = self.view.progress
        with patch("aggregator.rebuild", side_effect=RuntimeError("broken")):
            with self.assertRaises(RuntimeError):
                self.view.apply_progress_event(ProgressEvent.new("r-c1", 20, 30))
        self.assertIs(self.view.progress, progress)
        self.assertEqual(self.view.live.get_progress("r-c1").current_minutes, 10)

    def test_rebuild_replaces_everything(self):
        self.assertTrue(self.view.rebuild(fetch_result([campaign("c2", 60, game_name="Game B")])))
        self.assertEqual([game.name for game in self.view.games.values()], ["Game B"])
        self.assertEqual([c.id for c in self.view.campaigns], ["c2"])
        # progress only known from before is kept
        self.assertEqual(self.view.live.get_progress("r-c1").current_minutes, 10)
        self.assertFalse(self.view.mining_status.is_mining)


class TestMineAllQueue(unittest.TestCase):
    def test_current_id(self):
        queue = MineAllQueue("Game A", ["c1", "c2"])
        self.assertEqual(queue.current_id, "c1")
        queue.index = 2
        self.assertIsNone(queue.current_id)
        self.assertEqual(len(queue), 2)


if __name__ == "__main__":
    unittest.main()
