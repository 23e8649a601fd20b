import unittest

import game


def make_item(item_id, rarity="Common", mold="Copper", price=1.0, damage=1, defense=1, odds=1.0):
    return game.Item(id=item_id, odds=odds, mold=mold, rarity=rarity, price=price,
                     weapon="Sword", damage=damage, defense=defense)


class SellQueueTests(unittest.TestCase):
    def test_item_is_due_exactly_after_delay(self):
        q = game.SellQueue()
        item = make_item(1)
        q.enqueue(item, now=1000)
        self.assertEqual(q.tick(1029.9), [])
        self.assertEqual(q.tick(1030), [item])
        self.assertEqual(q.tick(2000), [])
        self.assertEqual(len(q), 0)

    def test_overdue_items_come_out_in_one_batch(self):
        q = game.SellQueue()
        a, b, c = make_item(1), make_item(2), make_item(3)
        q.enqueue(a, now=0)
        q.enqueue(b, now=10)
        q.enqueue(c, now=40)
        self.assertEqual(q.tick(45), [a, b])
        self.assertIn(3, q)

    def test_cancel(self):
        q = game.SellQueue()
        item = make_item(7)
        q.enqueue(item, now=0)
        self.assertIsNone(q.cancel(8))
        self.assertIs(q.cancel(7), item)
        self.assertEqual(q.tick(100), [])

    def test_remaining_time(self):
        entry = game.SellEntry(make_item(1), enqueued_at=10)
        self.assertEqual(entry.due_at, 40)
        self.assertEqual(entry.remaining(25), 15)
        self.assertEqual(entry.remaining(60), 0)


class ProcessSellAreaTests(unittest.TestCase):
    def test_sale_credits_money_and_exp(self):
        s = game.default_session(seed=2)
        item = make_item(4, rarity="Rare", mold="Silver", price=10)
        s.sell_area.enqueue(item, now=0)
        sold = []
        s.events.subscribe(game.ITEM_SOLD, lambda item, exp, levels: sold.append((item.id, exp)))

        self.assertEqual(game.process_sell_area(s, 30), [item])
        self.assertEqual(s.money, 10)
        self.assertAlmostEqual(s.progression.exp, 52.5)
        self.assertEqual(s.recycled_ids, [4])
        self.assertEqual(sold, [(4, 52.5)])

    def test_nothing_due_changes_nothing(self):
        s = game.default_session(seed=2)
        s.sell_area.enqueue(make_item(4), now=0)
        self.assertEqual(game.process_sell_area(s, 10), [])
        self.assertEqual(s.money, 0)


class InventoryActionTests(unittest.TestCase):
    def setUp(self):
        self.s = game.default_session(seed=2)
        self.a = make_item(1)
        self.b = make_item(2)
        self.s.inventory = [self.a, self.b]

    def test_sell_moves_item_to_sell_area(self):
        res = game.sell_item(self.s, 1, now=5)
        self.assertTrue(res.ok)
        self.assertNotIn(self.a, self.s.inventory)
        self.assertIn(1, self.s.sell_area)
        self.assertIs(game.sell_item(self.s, 1, now=5).reason, game.Failure.TARGET_NOT_FOUND)

    def test_cancel_returns_item_to_inventory(self):
        game.sell_item(self.s, 1, now=5)
        res = game.cancel_sale(self.s, 1)
        self.assertTrue(res.ok)
        self.assertIn(self.a, self.s.inventory)
        self.assertNotIn(1, self.s.sell_area)
        self.assertFalse(game.cancel_sale(self.s, 1).ok)

    def test_equip_swaps_with_current_weapon(self):
        game.equip_item(self.s, 1)
        self.assertIs(self.s.equipped, self.a)
        game.equip_item(self.s, 2)
        self.assertIs(self.s.equipped, self.b)
        self.assertEqual(self.s.inventory, [self.a])

    def test_unequip(self):
        self.assertFalse(game.unequip_item(self.s).ok)
        game.equip_item(self.s, 2)
        self.assertTrue(game.unequip_item(self.s).ok)
        self.assertIsNone(self.s.equipped)
        self.assertIn(self.b, self.s.inventory)

    def test_equipped_item_cannot_be_sold(self):
        game.equip_item(self.s, 1)
        self.assertFalse(game.sell_item(self.s, 1, now=0).ok)


class SortTests(unittest.TestCase):
    def test_sort_keys(self):
        s = game.default_session(seed=2)
        common = make_item(1, rarity="Common", price=5, damage=1)
        zenith = make_item(2, rarity="Zenith", price=1, damage=9)
        rare = make_item(3, rarity="Rare", price=3, damage=4)
        s.inventory = [common, zenith, rare]

        s.settings.storage_sort = "Rarity"
        self.assertEqual([i.id for i in game.sorted_inventory(s)], [2, 3, 1])
        s.settings.storage_sort = "Price"
        self.assertEqual([i.id for i in game.sorted_inventory(s)], [1, 3, 2])
        s.settings.storage_sort = "Damage"
        self.assertEqual([i.id for i in game.sorted_inventory(s)], [2, 3, 1])


class SettingsTests(unittest.TestCase):
    def test_threshold_validation(self):
        settings = game.GameSettings()
        for bad in (0, -3, "5", None, True, float("inf"), float("nan")):
            self.assertFalse(settings.set_auto_sell_threshold(bad))
        self.assertEqual(settings.auto_sell_threshold, 100)
        self.assertTrue(settings.set_auto_sell_threshold(250))
        self.assertEqual(settings.auto_sell_threshold, 250)

    def test_sort_validation(self):
        settings = game.GameSettings()
        self.assertFalse(settings.set_storage_sort("Weight"))
        self.assertTrue(settings.set_storage_sort("RNG"))
        self.assertEqual(settings.storage_sort, "RNG")

    def test_dispatch_reports_invalid_threshold(self):
        s = game.default_session(seed=2)
        res = game.dispatch(s, {"type": "SET_AUTO_SELL", "threshold": -1}, now=0)
        self.assertFalse(res.ok)
        self.assertEqual(s.notices[-1], "Invalid value!")


class EventBusTests(unittest.TestCase):
    def test_failing_handler_is_logged_and_others_still_run(self):
        bus = game.EventBus()
        got = []

        def broken(**_):
            raise ValueError("nope")

        bus.subscribe("ping", broken)
        bus.subscribe("ping", lambda value: got.append(value))
        with self.assertLogs("game", level="ERROR"):
            bus.emit("ping", value=3)
        self.assertEqual(got, [3])

    def test_unsubscribe(self):
        bus = game.EventBus()
        got = []
        handler = lambda value: got.append(value)  # noqa: E731
        bus.subscribe("ping", handler)
        bus.unsubscribe("ping", handler)
        bus.emit("ping", value=1)
        self.assertEqual(got, [])


if __name__ == "__main__":
    unittest.main()
