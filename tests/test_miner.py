
import unittest
from unittest.mock import patch, call, MagicMock, AsyncMock
import sys
from pathlib import Path

# Add project root to path to allow imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from translate import _
from miner import Miner
from output import ToastKind
from favorites import MemoryStore
from sources import FetchResult
from exceptions import CommandFailed
from mine_all import MineAllQueue, StartResult
from constants import QueueState, State
from events import MiningCompleteEvent, MiningStatusEvent, NoChannelsEvent, ProgressEvent
from inventory import Campaign, Inventory, MiningStatus, Progress, Statistics


def campaign(campaign_id, rewards, game_name="Game A"):
    return Campaign({
        "id": campaign_id,
        "name": f"Campaign {campaign_id}",
        "game_id": f"id-{game_name}",
        "game_name": game_name,
        "time_based_drops": [
            {"id": reward_id, "name": f"Reward {reward_id}", "required_minutes_watched": minutes}
            for reward_id, minutes in rewards
        ],
    })


def fetch_result(campaigns, progress=(), *, failed=None):
    return FetchResult(
        list(campaigns),
        list(progress),
        Inventory.empty(),
        Statistics.empty(),
        MiningStatus.idle(),
        failed,
    )


MINING = {
    "is_mining": True,
    "current_channel": {"id": "ch1", "display_name": "Streamer", "game_name": "Game A"},
    "current_drop": {
        "drop_id": "r3", "game_name": "Game A", "current_minutes": 10, "required_minutes": 60
    },
}


class TestMiner(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.settings = MagicMock()
        self.settings.favorite_games = ["Game A"]
        self.settings.notify_new_favorite_campaigns = True
        self.settings.notify_on_drop_claimed = True
        self.settings.auto_mining_enabled = False
        self.settings.once = False
        self.fetcher = MagicMock()
        for name in (
            "fetch_all",
            "start_campaign_mining",
            "start_auto_mining",
            "stop_mining",
            "claim_drop",
            "update_drops_settings",
            "fetch_eligible_channels",
        ):
            setattr(self.fetcher, name, AsyncMock())
        self.fetcher.get_mining_status = AsyncMock(return_value=MiningStatus(MINING))
        self.output = MagicMock()
        with patch("miner.SourceFetcher", return_value=self.fetcher):
            self.miner = Miner(self.settings, output=self.output, store=MemoryStore())
        self.campaigns = [campaign("c1", [("r1", 30), ("r2", 60), ("r3", 60)])]
        self.progress = [
            Progress.new("c1", "r1", 30, 30),
            Progress.new("c1", "r2", 60, 60, drop_instance_id="inst-2"),
            Progress.new("c1", "r3", 10, 60),
        ]
        self.assertTrue(self.miner.apply_fetch(fetch_result(self.campaigns, self.progress)))

    def toasts(self):
        return [c.args[0] for c in self.output.toast.call_args_list]

    def test_apply_fetch_builds_view(self):
        game = self.miner.view.get_game("Game A")
        self.assertTrue(game.is_favorite)
        self.assertTrue(game.has_claimable)
        self.assertEqual(game.drops_in_progress, 1)

    def test_favorite_notifications(self):
        # the first fetch only seeds the cache
        self.assertEqual(self.toasts(), [])
        campaigns = [*self.campaigns, campaign("c2", [("r4", 60)])]
        self.miner.apply_fetch(fetch_result(campaigns, self.progress))
        expected = _("favorites", "new_campaigns").format(
            game="Game A", count=1, names="Campaign c2"
        )
        self.assertIn(expected, self.toasts())

    def test_favorite_notifications_disabled(self):
        self.settings.notify_new_favorite_campaigns = False
        campaigns = [*self.campaigns, campaign("c2", [("r4", 60)])]
        self.miner.apply_fetch(fetch_result(campaigns, self.progress))
        self.assertEqual(self.toasts(), [])

    def test_all_sources_failed_keeps_view(self):
        failed = set(FetchResult.PHASE_ONE)
        self.assertFalse(self.miner.apply_fetch(fetch_result([], failed=failed)))
        self.assertIsNotNone(self.miner.view.get_game("Game A"))
        self.assertEqual(self.miner.view.error, _("error", "all_sources_failed"))

    async def test_refresh(self):
        self.fetcher.fetch_all.return_value = fetch_result(
            [campaign("c9", [("r9", 30)], game_name="Game B")]
        )
        self.assertTrue(await self.miner.refresh())
        self.assertIsNotNone(self.miner.view.get_game("Game B"))
        self.assertIsNone(self.miner.view.get_game("Game A"))

    async def test_claim_all(self):
        with patch("miner.asyncio.sleep", new_callable=AsyncMock) as sleep:
            claimed = await self.miner.claim_all("Game A")
        self.assertEqual(claimed, 2)
        self.assertEqual(
            self.fetcher.claim_drop.await_args_list, [call("r1", None), call("r2", "inst-2")]
        )
        # only waits between claims
        sleep.assert_awaited_once_with(0.5)
        self.assertTrue(self.miner.view.live.get_progress("r1").is_claimed)
        self.assertTrue(self.miner.view.live.get_progress("r2").is_claimed)
        self.assertIs(self.miner._state, State.DATA_FETCH)
        game = self.miner.view.get_game("Game A")
        self.assertFalse(game.has_claimable)

    async def test_claim_all_partial_failure(self):
        self.fetcher.claim_drop.side_effect = [CommandFailed("claim_drop", "expired"), None]
        with patch("miner.asyncio.sleep", new_callable=AsyncMock):
            claimed = await self.miner.claim_all("Game A")
        self.assertEqual(claimed, 1)
        self.assertFalse(self.miner.view.live.get_progress("r1").is_claimed)
        self.assertTrue(self.miner.view.live.get_progress("r2").is_claimed)
        self.output.toast.assert_any_call(
            _("error", "command_failed").format(reason="expired"), ToastKind.ERROR
        )

    async def test_claim_all_nothing(self):
        self.assertEqual(await self.miner.claim_all("Game B"), 0)
        self.fetcher.claim_drop.assert_not_awaited()
        self.assertIs(self.miner._state, State.IDLE)

    async def test_claim_reward(self):
        self.assertTrue(await self.miner.claim_reward("r2"))
        self.fetcher.claim_drop.assert_awaited_once_with("r2", "inst-2")
        self.assertTrue(self.miner.view.live.get_progress("r2").is_claimed)

    async def test_stop_mining(self):
        self.miner.view.apply_mining_status(MiningStatus(MINING))
        self.miner.queue.state = QueueState.RUNNING
        self.miner.queue.queue = MineAllQueue("Game A", ["c1"])
        await self.miner.stop_mining()
        self.fetcher.stop_mining.assert_awaited_once()
        self.assertFalse(self.miner.view.mining_status.is_mining)
        self.assertEqual(self.miner.view.progress, [])
        self.assertIs(self.miner.queue.state, QueueState.ABORTED)
        self.assertIn(_("status", "mining_stopped"), self.toasts())

    async def test_stop_mining_failure_refetches(self):
        self.fetcher.stop_mining.side_effect = CommandFailed("stop_auto_mining", "busy")
        await self.miner.stop_mining()
        self.fetcher.get_mining_status.assert_awaited_once()
        self.assertTrue(self.miner.view.mining_status.is_mining)

    async def test_start_campaign_mining(self):
        self.miner.queue.state = QueueState.RUNNING
        self.miner.queue.queue = MineAllQueue("Game A", ["c1"])
        self.assertTrue(await self.miner.start_campaign_mining("c1", "ch1"))
        self.fetcher.start_campaign_mining.assert_awaited_once_with("c1", "ch1")
        self.assertIs(self.miner.queue.state, QueueState.ABORTED)
        self.assertTrue(self.miner.view.mining_status.is_mining)

    async def test_start_campaign_mining_failure(self):
        self.fetcher.start_campaign_mining.side_effect = CommandFailed(
            "start_campaign_mining", "no channels"
        )
        self.assertFalse(await self.miner.start_campaign_mining("c1"))
        self.fetcher.get_mining_status.assert_not_awaited()

    async def test_mine_all(self):
        result = await self.miner.mine_all("Game A")
        self.assertIs(result, StartResult.STARTED)
        self.fetcher.start_campaign_mining.assert_awaited_once_with("c1")
        self.fetcher.get_mining_status.assert_awaited_once()

    async def test_progress_event(self):
        self.miner.view.apply_mining_status(MiningStatus(MINING))
        await self.miner.handle_event(ProgressEvent.new("r3", 11, 60))
        self.assertEqual(self.miner.view.live.get_progress("r3").current_minutes, 11)
        self.assertEqual(self.miner.view.mining_status.current_drop.current_minutes, 11)
        self.output.display_mining.assert_called_with(self.miner.view.mining_status)

    async def test_mining_status_event(self):
        await self.miner.handle_event(MiningStatusEvent(MINING))
        self.assertTrue(self.miner.view.mining_status.is_mining)
        self.assertTrue(self.miner.view.get_game("Game A").is_mining)

    async def test_mining_complete_advances_queue(self):
        self.miner.queue.state = QueueState.RUNNING
        self.miner.queue.queue = MineAllQueue("Game A", ["c1"])
        with patch.object(self.miner.queue, "advance", AsyncMock()) as advance:
            await self.miner.handle_event(
                MiningCompleteEvent({"game_name": "Game A", "reason": "done"})
            )
        advance.assert_awaited_once()
        self.assertIs(self.miner._state, State.DATA_FETCH)

    async def test_mining_complete_matches_game_case_insensitive(self):
        self.miner.queue.state = QueueState.RUNNING
        self.miner.queue.queue = MineAllQueue("Game A", ["c1", "c2"])
        with patch.object(self.miner.queue, "advance", AsyncMock()) as advance:
            await self.miner.handle_event(
                MiningCompleteEvent({"game_name": "game a", "reason": "done"})
            )
            await self.miner.handle_event(MiningCompleteEvent({"reason": "done"}))
        self.assertEqual(advance.await_count, 2)

    async def test_mining_complete_for_other_game_keeps_queue(self):
        self.miner.queue.state = QueueState.RUNNING
        self.miner.queue.queue = MineAllQueue("Game A", ["c1", "c2"])
        with patch.object(self.miner.queue, "advance", AsyncMock()) as advance:
            await self.miner.handle_event(
                MiningCompleteEvent({"game_name": "Game B", "reason": "done"})
            )
        advance.assert_not_awaited()
        self.assertEqual(self.miner.queue.queue.index, 0)
        self.assertIs(self.miner.queue.state, QueueState.RUNNING)
        self.assertIs(self.miner._state, State.DATA_FETCH)

    async def test_no_channels_without_queue(self):
        await self.miner.handle_event(NoChannelsEvent({"reason": "offline"}))
        self.assertIs(self.miner._state, State.IDLE)
        self.assertIn(_("status", "no_channels").format(reason="offline"), self.toasts())

    async def test_no_channels_finishing_queue(self):
        self.miner.queue.state = QueueState.RUNNING
        self.miner.queue.queue = MineAllQueue("Game A", ["c1"])
        await self.miner.handle_event(NoChannelsEvent({"reason": "offline"}))
        self.assertIs(self.miner.queue.state, QueueState.COMPLETED)
        self.assertIs(self.miner._state, State.DATA_FETCH)

    async def test_start_auto_mining(self):
        self.miner.queue.state = QueueState.RUNNING
        self.miner.queue.queue = MineAllQueue("Game A", ["c1"])
        self.assertTrue(await self.miner.start_auto_mining())
        self.fetcher.start_auto_mining.assert_awaited_once()
        self.assertIs(self.miner.queue.state, QueueState.ABORTED)

    async def test_initial_actions(self):
        self.settings.drops_settings.return_value = {"auto_mining_enabled": False}
        self.settings.mine_all = None
        self.settings.campaign = "c1"
        self.settings.channel = "ch1"
        await self.miner._initial_actions()
        self.fetcher.update_drops_settings.assert_awaited_once_with(
            {"auto_mining_enabled": False}
        )
        self.fetcher.start_campaign_mining.assert_awaited_once_with("c1", "ch1")

    async def test_push_settings_failure(self):
        self.settings.drops_settings.return_value = {}
        self.fetcher.update_drops_settings.side_effect = CommandFailed(
            "update_drops_settings", "nope"
        )
        self.assertFalse(await self.miner.push_settings())

    def test_close(self):
        self.miner.close()
        self.assertIs(self.miner._state, State.EXIT)
        self.miner.change_state(State.DATA_FETCH)
        self.assertIs(self.miner._state, State.EXIT)
        self.output.close.assert_called_once()


if __name__ == "__main__":
    unittest.main()
