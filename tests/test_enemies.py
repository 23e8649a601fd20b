import random
import unittest

import content
import game

MAX = content.MAX_VALUE


class FixedRng:
    def __init__(self, rolls=()):
        self.rolls = list(rolls)

    def randint(self, a, b):
        return self.rolls.pop(0) if self.rolls else b

    def choice(self, seq):
        return seq[0]


def area(name):
    return content.DEFAULT_CATALOG.area(name)


def make_enemy(name="Common", spawned_at=0, despawn_after=100):
    return game.Enemy(game.make_uid("enemy"), name, False, 10, 1, 5, 5, 1.0, spawned_at, despawn_after)


class GenerateEnemyTests(unittest.TestCase):
    def test_elite_roll_scales_every_stat(self):
        enemy = game.generate_enemy(area("Beginner Hall"), 1.0, FixedRng([MAX, 1]), now=0)
        self.assertEqual(enemy.name, "Common")
        self.assertTrue(enemy.elite)
        self.assertEqual((enemy.health, enemy.damage, enemy.exp, enemy.cash), (1500, 50, 400, 1750))

    def test_plain_enemy(self):
        enemy = game.generate_enemy(area("Beginner Hall"), 1.0, FixedRng([MAX, 2]), now=0)
        self.assertFalse(enemy.elite)
        self.assertEqual((enemy.health, enemy.damage, enemy.exp, enemy.cash), (75, 5, 20, 50))

    def test_champion_bonus_stacks_on_elite(self):
        enemy = game.generate_enemy(area("Champions Hall"), 1.0, FixedRng([MAX, 1]), now=0)
        self.assertTrue(enemy.elite)
        self.assertEqual(enemy.health, 300_000)
        self.assertEqual(enemy.damage, 10_000)
        self.assertEqual(enemy.exp, 300_000)
        self.assertEqual(enemy.cash, 2_625_000)

    def test_elite_hall_enemies_are_always_elite(self):
        rng = random.Random(3)
        for _ in range(20):
            self.assertTrue(game.generate_enemy(area("Elite Hall"), 1.0, rng, now=0).elite)

    def test_despawn_time_grows_with_rank(self):
        self.assertEqual(game.despawn_seconds(1), 1179)
        self.assertEqual(game.despawn_seconds(22), 2169)
        enemy = game.generate_enemy(area("Beginner Hall"), 1.0, FixedRng([MAX, 2]), now=50)
        self.assertEqual(enemy.despawn_after, 1179)
        self.assertEqual(enemy.spawned_at, 50)

    def test_rare_roll_picks_rare_row(self):
        zenith = content.ENEMY_TIERS.get("Zenith")
        enemy = game.generate_enemy(area("Beginner Hall"), 1.0, FixedRng([zenith.threshold, 2]), now=0)
        self.assertEqual(enemy.name, "Zenith")
        self.assertEqual(enemy.health, 50 * 10000)


class ExpiryTests(unittest.TestCase):
    def test_expires_once_lifetime_has_passed(self):
        enemy = make_enemy(spawned_at=0, despawn_after=100)
        self.assertFalse(enemy.expired(99.9))
        self.assertTrue(enemy.expired(100))

    def test_sweep_removes_only_expired(self):
        s = game.default_session(seed=1)
        old = make_enemy(spawned_at=0, despawn_after=10)
        young = make_enemy(spawned_at=5, despawn_after=10)
        s.enemies["Beginner Hall"] = [old, young]
        self.assertEqual(game.despawn_expired(s, 10), 1)
        self.assertEqual(s.enemies["Beginner Hall"], [young])

    def test_spawn_adds_one_enemy_per_area(self):
        s = game.default_session(seed=1)
        spawned = game.spawn_enemies(s, now=0, rng=random.Random(8))
        self.assertEqual(len(spawned), len(content.AREAS))
        for a in content.AREAS:
            self.assertEqual(len(s.enemies[a.name]), 1)

    def test_spawn_runs_the_expiry_sweep(self):
        s = game.default_session(seed=1)
        s.enemies["Adept Hall"] = [make_enemy(spawned_at=0, despawn_after=10)]
        game.spawn_enemies(s, now=20, rng=random.Random(8))
        self.assertEqual(len(s.enemies["Adept Hall"]), 1)
        self.assertEqual(s.enemies["Adept Hall"][0].spawned_at, 20)


class SortTests(unittest.TestCase):
    def test_rarest_first_unknown_last(self):
        enemies = [make_enemy("Common"), make_enemy("Boss"), make_enemy("Zenith"), make_enemy("Rare")]
        game.sort_enemies(enemies, content.ENEMY_TIERS)
        self.assertEqual([e.name for e in enemies], ["Zenith", "Rare", "Common", "Boss"])


if __name__ == "__main__":
    unittest.main()
