from __future__ import annotations

import unittest

from raffle.blockchain.coordinator import FUND_AMOUNT, VRFCoordinatorMock
from raffle.blockchain.ledger import InMemoryLedger, LedgerError
from raffle.lottery.errors import (
    InsufficientPayment,
    OnlyCoordinatorCanFulfill,
    RaffleNotOpen,
    TransferFailed,
    UnknownRequest,
    UpkeepNotNeeded,
)
from raffle.lottery.event_manager import MemoryStore
from raffle.lottery.models import OracleConfig, RaffleConfig, RaffleState
from raffle.lottery.raffle import Raffle
from raffle.utils.common import normalize_address, to_wei

GAS_LANE = "0x474e34a077df58807dbe9c96d3c009b23b3c6d0cce433e59bbf5b34f823bc56c"
RAFFLE_ADDRESS = normalize_address("0x" + "11" * 20)
PLAYERS = [normalize_address("0x%040x" % (0xA0 + i)) for i in range(6)]
FEE = to_wei("0.01")
INTERVAL = 30


class FakeClock:
    def __init__(self, now: int = 1_000) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


def make_config(coordinator_address: str, subscription_id: int = 1) -> RaffleConfig:
    return RaffleConfig(
        address=RAFFLE_ADDRESS,
        entrance_fee=FEE,
        interval=INTERVAL,
        oracle=OracleConfig(
            coordinator_address=coordinator_address,
            subscription_id=subscription_id,
            gas_lane=GAS_LANE,
            callback_gas_limit=500_000,
        ),
    )


class StubCoordinator:
    """Coordinator double whose request hook can re-enter the raffle."""

    address = normalize_address("0x" + "22" * 20)

    def __init__(self) -> None:
        self.calls = []
        self.on_request = None
        self.next_id = 41

    def request_random_words(self, key_hash, sub_id, request_confirmations, callback_gas_limit, num_words, *, sender):
        self.calls.append((key_hash, sub_id, request_confirmations, callback_gas_limit, num_words, sender))
        if self.on_request is not None:
            self.on_request()
        self.next_id += 1
        return self.next_id


class ReentrantLedger(InMemoryLedger):
    """Ledger that calls back into the raffle before settling a transfer."""

    def __init__(self) -> None:
        super().__init__()
        self.during_transfer = None

    def transfer(self, to: str, amount: int) -> str:
        if self.during_transfer is not None:
            self.during_transfer()
        return super().transfer(to, amount)


class RaffleTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.store = MemoryStore()
        self.ledger = ReentrantLedger()
        self.coordinator = VRFCoordinatorMock(store=self.store, clock=self.clock)
        self.sub_id = self.coordinator.create_subscription()
        self.coordinator.fund_subscription(self.sub_id, FUND_AMOUNT)
        self.raffle = Raffle(
            make_config(self.coordinator.address, self.sub_id),
            self.coordinator,
            self.ledger,
            store=self.store,
            clock=self.clock,
        )
        self.coordinator.add_consumer(self.sub_id, self.raffle.address)

    def enter(self, *players: str) -> None:
        for player in players:
            self.raffle.enter_raffle(player, FEE)

    def start_draw(self) -> int:
        self.clock.advance(INTERVAL + 1)
        return self.raffle.perform_upkeep(b"")


class ConstructionTests(RaffleTestCase):
    def test_initial_state(self) -> None:
        self.assertEqual(self.raffle.get_raffle_state(), RaffleState.OPEN)
        self.assertEqual(self.raffle.get_entrance_fee(), FEE)
        self.assertEqual(self.raffle.get_interval(), INTERVAL)
        self.assertEqual(self.raffle.get_number_of_players(), 0)
        self.assertEqual(self.raffle.get_last_timestamp(), 1_000)
        self.assertIsNone(self.raffle.get_recent_winner())
        self.assertEqual(self.raffle.get_num_words(), 1)
        self.assertEqual(self.raffle.get_request_confirmations(), 3)
        self.assertIsNone(self.raffle.get_pending_request_id())
        self.assertEqual(self.raffle.get_round_id(), 1)

    def test_invalid_configuration_is_rejected(self) -> None:
        config = make_config(self.coordinator.address)
        bad_fee = RaffleConfig(address=config.address, entrance_fee=0, interval=30, oracle=config.oracle)
        with self.assertRaises(ValueError):
            Raffle(bad_fee, self.coordinator, self.ledger)


class EnterRaffleTests(RaffleTestCase):
    def test_records_player_and_balance(self) -> None:
        self.raffle.enter_raffle(PLAYERS[0], FEE + 5)
        self.assertEqual(self.raffle.get_player(0), PLAYERS[0])
        self.assertEqual(self.raffle.get_number_of_players(), 1)
        self.assertEqual(self.raffle.get_pooled_balance(), FEE + 5)

    def test_duplicate_entries_are_allowed(self) -> None:
        self.enter(PLAYERS[0], PLAYERS[0])
        self.assertEqual(self.raffle.get_players(), [PLAYERS[0], PLAYERS[0]])
        self.assertEqual(self.raffle.get_pooled_balance(), 2 * FEE)

    def test_underpayment_is_rejected_without_mutation(self) -> None:
        with self.assertRaises(InsufficientPayment):
            self.raffle.enter_raffle(PLAYERS[0], FEE - 1)
        self.assertEqual(self.raffle.get_number_of_players(), 0)
        self.assertEqual(self.raffle.get_pooled_balance(), 0)

    def test_entry_rejected_while_calculating(self) -> None:
        self.enter(PLAYERS[0])
        self.start_draw()
        with self.assertRaises(RaffleNotOpen):
            self.raffle.enter_raffle(PLAYERS[1], FEE)
        self.assertEqual(self.raffle.get_number_of_players(), 1)

    def test_payment_is_checked_before_state(self) -> None:
        self.enter(PLAYERS[0])
        self.start_draw()
        with self.assertRaises(InsufficientPayment):
            self.raffle.enter_raffle(PLAYERS[1], 0)

    def test_lowercase_address_is_checksummed(self) -> None:
        self.raffle.enter_raffle(PLAYERS[1].lower(), FEE)
        self.assertEqual(self.raffle.get_player(0), PLAYERS[1])

    def test_invalid_address_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.raffle.enter_raffle("not-an-address", FEE)

    def test_emits_raffle_enter(self) -> None:
        self.enter(PLAYERS[0])
        events = self.store.get_events("RaffleEnter")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].args["player"], PLAYERS[0])

    def test_get_player_out_of_range(self) -> None:
        with self.assertRaises(IndexError):
            self.raffle.get_player(0)


class CheckUpkeepTests(RaffleTestCase):
    def test_false_without_players(self) -> None:
        self.clock.advance(INTERVAL + 1)
        self.assertEqual(self.raffle.check_upkeep(b""), (False, b""))

    def test_false_before_interval(self) -> None:
        self.enter(PLAYERS[0])
        self.clock.advance(INTERVAL - 1)
        upkeep_needed, _ = self.raffle.check_upkeep(b"")
        self.assertFalse(upkeep_needed)

    def test_true_once_interval_elapsed(self) -> None:
        self.enter(PLAYERS[0])
        self.clock.advance(INTERVAL)
        upkeep_needed, perform_data = self.raffle.check_upkeep(b"")
        self.assertTrue(upkeep_needed)
        self.assertEqual(perform_data, b"")

    def test_false_while_calculating(self) -> None:
        self.enter(PLAYERS[0])
        self.start_draw()
        upkeep_needed, _ = self.raffle.check_upkeep(b"")
        self.assertFalse(upkeep_needed)


class PerformUpkeepTests(RaffleTestCase):
    def test_moves_to_calculating_and_records_request(self) -> None:
        self.enter(PLAYERS[0])
        request_id = self.start_draw()
        self.assertEqual(request_id, 1)
        self.assertEqual(self.raffle.get_raffle_state(), RaffleState.CALCULATING)
        self.assertEqual(self.raffle.get_pending_request_id(), request_id)
        self.assertEqual(self.coordinator.pending_request_ids(), [request_id])
        events = self.store.get_events("RequestedRaffleWinner")
        self.assertEqual(events[-1].args["requestId"], request_id)

    def test_rejected_when_not_needed(self) -> None:
        self.enter(PLAYERS[0])
        with self.assertRaises(UpkeepNotNeeded) as ctx:
            self.raffle.perform_upkeep(b"")
        self.assertEqual(ctx.exception.num_players, 1)
        self.assertEqual(ctx.exception.balance, FEE)
        self.assertEqual(ctx.exception.state, RaffleState.OPEN)
        self.assertEqual(self.raffle.get_raffle_state(), RaffleState.OPEN)

    def test_rejected_without_players_after_interval(self) -> None:
        self.clock.advance(INTERVAL + 1)
        with self.assertRaises(UpkeepNotNeeded) as ctx:
            self.raffle.perform_upkeep(b"")
        self.assertEqual(ctx.exception.num_players, 0)
        self.assertEqual(ctx.exception.balance, 0)
        self.assertEqual(self.raffle.get_raffle_state(), RaffleState.OPEN)
        self.assertIsNone(self.raffle.get_pending_request_id())
        self.assertEqual(self.coordinator.pending_request_ids(), [])
        self.assertEqual(self.store.get_events("RequestedRaffleWinner"), [])

    def test_second_draw_rejected_while_pending(self) -> None:
        self.enter(PLAYERS[0])
        self.start_draw()
        self.clock.advance(INTERVAL * 2)
        with self.assertRaises(UpkeepNotNeeded):
            self.raffle.perform_upkeep(b"")
        self.assertEqual(len(self.coordinator.pending_request_ids()), 1)

    def test_passes_oracle_parameters(self) -> None:
        stub = StubCoordinator()
        raffle = Raffle(make_config(stub.address, 7), stub, self.ledger, clock=self.clock)
        raffle.enter_raffle(PLAYERS[0], FEE)
        self.clock.advance(INTERVAL)
        raffle.perform_upkeep(b"")
        self.assertEqual(stub.calls, [(GAS_LANE, 7, 3, 500_000, 1, RAFFLE_ADDRESS)])

    def test_coordinator_failure_restores_open_state(self) -> None:
        stub = StubCoordinator()

        def fail() -> None:
            raise RuntimeError("coordinator down")

        stub.on_request = fail
        raffle = Raffle(make_config(stub.address), stub, self.ledger, clock=self.clock)
        raffle.enter_raffle(PLAYERS[0], FEE)
        self.clock.advance(INTERVAL)
        with self.assertRaises(RuntimeError):
            raffle.perform_upkeep(b"")
        self.assertEqual(raffle.get_raffle_state(), RaffleState.OPEN)
        self.assertIsNone(raffle.get_pending_request_id())
        self.assertTrue(raffle.check_upkeep(b"")[0])

    def test_reentrant_calls_observe_calculating(self) -> None:
        stub = StubCoordinator()
        raffle = Raffle(make_config(stub.address), stub, self.ledger, clock=self.clock)
        seen = []

        def reenter() -> None:
            seen.append(raffle.get_raffle_state())
            with self.assertRaises(UpkeepNotNeeded):
                raffle.perform_upkeep(b"")
            with self.assertRaises(RaffleNotOpen):
                raffle.enter_raffle(PLAYERS[1], FEE)

        stub.on_request = reenter
        raffle.enter_raffle(PLAYERS[0], FEE)
        self.clock.advance(INTERVAL)
        raffle.perform_upkeep(b"")
        self.assertEqual(seen, [RaffleState.CALCULATING])
        self.assertEqual(len(stub.calls), 1)
        self.assertEqual(raffle.get_players(), [PLAYERS[0]])


class FulfillRandomWordsTests(RaffleTestCase):
    def test_single_entrant_wins_the_pool(self) -> None:
        self.enter(PLAYERS[0])
        request_id = self.start_draw()
        self.clock.advance(5)

        delivered = self.coordinator.fulfill_random_words_with_override(request_id, self.raffle, [7])

        self.assertTrue(delivered)
        self.assertEqual(self.raffle.get_recent_winner(), PLAYERS[0])
        self.assertEqual(self.ledger.balance_of(PLAYERS[0]), FEE)
        self.assertEqual(self.raffle.get_raffle_state(), RaffleState.OPEN)
        self.assertEqual(self.raffle.get_number_of_players(), 0)
        self.assertEqual(self.raffle.get_pooled_balance(), 0)
        self.assertEqual(self.raffle.get_last_timestamp(), self.clock.now)
        self.assertIsNone(self.raffle.get_pending_request_id())
        self.assertEqual(self.raffle.get_round_id(), 2)

    def test_random_word_selects_index_modulo_players(self) -> None:
        self.enter(*PLAYERS[:5])
        request_id = self.start_draw()

        self.coordinator.fulfill_random_words_with_override(request_id, self.raffle, [12])

        self.assertEqual(self.raffle.get_recent_winner(), PLAYERS[2])
        self.assertEqual(self.ledger.balance_of(PLAYERS[2]), 5 * FEE)
        self.assertEqual(self.raffle.get_players(), [])

    def test_derived_words_pick_an_entrant(self) -> None:
        self.enter(*PLAYERS[:3])
        request_id = self.start_draw()
        self.assertTrue(self.coordinator.fulfill_random_words(request_id, self.raffle))
        self.assertIn(self.raffle.get_recent_winner(), PLAYERS[:3])

    def test_rounds_accumulate_independently(self) -> None:
        self.enter(PLAYERS[0], PLAYERS[1])
        first = self.start_draw()
        self.coordinator.fulfill_random_words_with_override(first, self.raffle, [1])
        self.assertEqual(self.ledger.balance_of(PLAYERS[1]), 2 * FEE)

        self.enter(PLAYERS[2], PLAYERS[3], PLAYERS[4])
        self.assertEqual(self.raffle.get_pooled_balance(), 3 * FEE)
        second = self.start_draw()
        self.assertNotEqual(first, second)
        self.coordinator.fulfill_random_words_with_override(second, self.raffle, [3])

        self.assertEqual(self.raffle.get_recent_winner(), PLAYERS[2])
        self.assertEqual(self.ledger.balance_of(PLAYERS[2]), 3 * FEE)
        history = self.store.get_round_history()
        self.assertEqual([item.round_id for item in history], [1, 2])
        self.assertEqual([item.prize for item in history], [2 * FEE, 3 * FEE])

    def test_winner_picked_event_and_history(self) -> None:
        self.enter(PLAYERS[0])
        request_id = self.start_draw()
        self.coordinator.fulfill_random_words_with_override(request_id, self.raffle, [9])

        events = self.store.get_events("WinnerPicked")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].args, {"winner": PLAYERS[0], "prize": FEE, "roundId": 1})
        snapshot = self.store.get_round_history()[-1]
        self.assertEqual(snapshot.request_id, request_id)
        self.assertEqual(snapshot.random_word, 9)
        self.assertEqual(snapshot.participant_count, 1)

    def test_only_coordinator_can_fulfill(self) -> None:
        self.enter(PLAYERS[0])
        request_id = self.start_draw()
        with self.assertRaises(OnlyCoordinatorCanFulfill) as ctx:
            self.raffle.fulfill_random_words(request_id, [7], caller=PLAYERS[0])
        self.assertIsInstance(ctx.exception, UnknownRequest)
        self.assertEqual(self.raffle.get_raffle_state(), RaffleState.CALCULATING)
        self.assertEqual(self.raffle.get_pending_request_id(), request_id)

    def test_unknown_request_is_rejected(self) -> None:
        self.enter(PLAYERS[0])
        request_id = self.start_draw()
        with self.assertRaises(UnknownRequest):
            self.raffle.fulfill_random_words(request_id + 1, [7], caller=self.coordinator.address)
        self.assertEqual(self.raffle.get_number_of_players(), 1)

    def test_stale_redelivery_is_rejected(self) -> None:
        self.enter(PLAYERS[0])
        request_id = self.start_draw()
        self.raffle.fulfill_random_words(request_id, [7], caller=self.coordinator.address)
        with self.assertRaises(UnknownRequest):
            self.raffle.fulfill_random_words(request_id, [7], caller=self.coordinator.address)
        self.assertEqual(self.ledger.balance_of(PLAYERS[0]), FEE)

    def test_failed_transfer_restores_round(self) -> None:
        self.enter(PLAYERS[0], PLAYERS[1])
        request_id = self.start_draw()
        last_timestamp = self.raffle.get_last_timestamp()
        self.ledger.reject(PLAYERS[1])

        with self.assertRaises(TransferFailed) as ctx:
            self.raffle.fulfill_random_words(request_id, [1], caller=self.coordinator.address)

        self.assertIsInstance(ctx.exception.__cause__, LedgerError)
        self.assertEqual(self.raffle.get_raffle_state(), RaffleState.CALCULATING)
        self.assertEqual(self.raffle.get_players(), [PLAYERS[0], PLAYERS[1]])
        self.assertEqual(self.raffle.get_pooled_balance(), 2 * FEE)
        self.assertEqual(self.raffle.get_pending_request_id(), request_id)
        self.assertEqual(self.raffle.get_last_timestamp(), last_timestamp)
        self.assertIsNone(self.raffle.get_recent_winner())
        self.assertEqual(self.raffle.get_round_id(), 1)
        self.assertEqual(self.store.get_events("WinnerPicked"), [])
        self.assertEqual(self.store.get_round_history(), [])

    def test_failed_transfer_discards_reentrant_publications(self) -> None:
        self.enter(PLAYERS[0])
        request_id = self.start_draw()
        published = self.store.get_raffle_snapshot()

        def reenter_then_fail() -> None:
            self.raffle.enter_raffle(PLAYERS[5], FEE)
            raise LedgerError("recipient reverted")

        self.ledger.during_transfer = reenter_then_fail
        with self.assertRaises(TransferFailed):
            self.raffle.fulfill_random_words(request_id, [0], caller=self.coordinator.address)

        self.assertEqual(self.raffle.get_players(), [PLAYERS[0]])
        self.assertEqual(self.store.get_raffle_snapshot(), self.raffle.snapshot())
        self.assertEqual(self.store.get_raffle_snapshot(), published)
        entries = [event.args["player"] for event in self.store.get_events("RaffleEnter")]
        self.assertEqual(entries, [PLAYERS[0]])

    def test_reentrant_entry_is_published_after_successful_payout(self) -> None:
        self.enter(PLAYERS[0])
        request_id = self.start_draw()
        self.ledger.during_transfer = lambda: self.raffle.enter_raffle(PLAYERS[5], FEE)

        self.raffle.fulfill_random_words(request_id, [0], caller=self.coordinator.address)

        self.assertEqual(self.raffle.get_players(), [PLAYERS[5]])
        self.assertEqual(self.raffle.get_round_id(), 2)
        names = [event.name for event in self.store.get_events() if event.name in ("RaffleEnter", "WinnerPicked")]
        self.assertEqual(names, ["RaffleEnter", "RaffleEnter", "WinnerPicked"])
        self.assertEqual(self.store.get_events("RaffleEnter")[-1].args["roundId"], 2)
        self.assertEqual(self.store.get_raffle_snapshot(), self.raffle.snapshot())

    def test_failed_delivery_can_be_retried(self) -> None:
        self.enter(PLAYERS[0])
        request_id = self.start_draw()
        self.ledger.reject(PLAYERS[0])

        self.assertFalse(self.coordinator.fulfill_random_words_with_override(request_id, self.raffle, [7]))
        self.assertEqual(self.coordinator.pending_request_ids(), [request_id])

        self.ledger.accept(PLAYERS[0])
        self.assertTrue(self.coordinator.fulfill_random_words_with_override(request_id, self.raffle, [7]))
        self.assertEqual(self.ledger.balance_of(PLAYERS[0]), FEE)
        self.assertEqual(self.raffle.get_raffle_state(), RaffleState.OPEN)

    def test_snapshot_reflects_record(self) -> None:
        self.enter(PLAYERS[0])
        request_id = self.start_draw()
        snapshot = self.raffle.snapshot()
        self.assertEqual(snapshot.state, RaffleState.CALCULATING)
        self.assertEqual(snapshot.players, [PLAYERS[0]])
        self.assertEqual(snapshot.pending_request_id, request_id)
        self.assertEqual(self.store.get_raffle_snapshot(), snapshot)


if __name__ == "__main__":
    unittest.main()
