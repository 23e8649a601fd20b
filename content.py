# content.py
# Data: rarity/mold/enemy tier tables, weapons, areas, and the tier resolver.
# Everything here is immutable and shared read-only by every session.

from __future__ import annotations
from dataclasses import dataclass, fields
from typing import Any, Dict, Generic, Iterator, List, Optional, Sequence, Tuple, TypeVar
import math

MAX_VALUE = 10 ** 20

STORAGE_SORTS = ["Rarity", "Price", "Damage", "Defense", "RNG"]


class ContentError(ValueError):
    """Misconfigured content table; raised at import/construction time."""


# --------------------------
# Tier rows
# --------------------------

@dataclass(frozen=True)
class RarityTier:
    name: str
    threshold: int
    price_mult: float
    damage_mult: float
    exp_mult: float


@dataclass(frozen=True)
class MoldTier:
    name: str
    threshold: int
    price_mult: float
    exp_mult: float


@dataclass(frozen=True)
class EnemyTier:
    name: str
    threshold: int
    health_mult: float
    damage_mult: float
    exp_mult: float
    cash_mult: float


def row_multipliers(row: Any) -> Tuple[float, ...]:
    # all columns after name/threshold, in declaration order
    return tuple(getattr(row, f.name) for f in fields(row)[2:])


T = TypeVar("T")


class TierTable(Generic[T]):
    """Rows sorted ascending by cumulative threshold (rarest first)."""

    def __init__(self, name: str, rows: Sequence[T]):
        self.name = name
        self.rows: Tuple[T, ...] = tuple(rows)
        if not self.rows:
            raise ContentError(f"{name}: table is empty")
        seen = set()
        prev = 0
        for row in self.rows:
            if row.name in seen:
                raise ContentError(f"{name}: duplicate tier {row.name!r}")
            seen.add(row.name)
            if row.threshold <= prev:
                raise ContentError(
                    f"{name}: threshold of {row.name!r} ({row.threshold}) must exceed {prev}"
                )
            prev = row.threshold
        self._index = {row.name: i for i, row in enumerate(self.rows)}

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[T]:
        return iter(self.rows)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def index_of(self, name: str) -> int:
        """Position from the top (0 = rarest); -1 if unknown."""
        return self._index.get(name, -1)

    def rank_of(self, name: str) -> int:
        """Rank counted from the bottom: the most common tier is 1; 0 if unknown."""
        i = self.index_of(name)
        return len(self.rows) - i if i >= 0 else 0

    def get(self, name: str) -> Optional[T]:
        i = self.index_of(name)
        return self.rows[i] if i >= 0 else None

    @property
    def lowest(self) -> T:
        return self.rows[-1]


def _threshold(odds: float) -> int:
    return math.floor(MAX_VALUE / odds)


def _rarity(name: str, odds: float, price: float, damage: float, exp: float) -> RarityTier:
    return RarityTier(name, _threshold(odds), price, damage, exp)


def _mold(name: str, odds: float, price: float, exp: float) -> MoldTier:
    return MoldTier(name, _threshold(odds), price, exp)


def _enemy(name: str, odds: float, health: float, damage: float, exp: float, cash: float) -> EnemyTier:
    return EnemyTier(name, _threshold(odds), health, damage, exp, cash)


# --------------------------
# Tables ("1 in N" odds per tier)
# --------------------------

RARITY_TIERS: TierTable[RarityTier] = TierTable("rarity", [
    _rarity("Zenith", 20_000_000, 10000, 500, 100),
    _rarity("Universal", 950_000, 4000, 200, 50),
    _rarity("Cosmic", 650_000, 1000, 150, 20),
    _rarity("Divine", 400_000, 750, 100, 13),
    _rarity("Mythical+2", 120_000, 500, 80, 10),
    _rarity("Mythical+1", 70_000, 550, 65, 7.75),
    _rarity("Mythical", 25_000, 300, 40, 6),
    _rarity("Legendary+2", 10_000, 100, 27.25, 4.5),
    _rarity("Legendary+1", 5_000, 75, 20, 4),
    _rarity("Legendary", 1_250, 50, 15, 3.25),
    _rarity("Epic+2", 700, 35, 26, 2.5),
    _rarity("Epic+1", 275, 25, 20.25, 2.25),
    _rarity("Epic", 150, 17.75, 15, 2.1),
    _rarity("Rare+2", 100, 10, 10, 1.8),
    _rarity("Rare+1", 50, 8.6, 6.5, 1.65),
    _rarity("Rare", 45, 7, 4, 1.5),
    _rarity("Uncommon+2", 20, 5.5, 2, 1.2),
    _rarity("Uncommon+1", 10, 4.2, 1.7, 1.15),
    _rarity("Uncommon", 6, 3.75, 1.5, 1.1),
    _rarity("Common+2", 2, 2, 1.25, 1.05),
    _rarity("Common+1", 1.5, 1.875, 1.1, 1.03),
    _rarity("Common", 1, 1.5, 1, 1),
])

MOLD_TIERS: TierTable[MoldTier] = TierTable("mold", [
    _mold("Heavenly", 1_250_000, 625, 350),
    _mold("Hallowed", 500_000, 200, 120),
    _mold("Onyx", 90_000, 90, 50),
    _mold("Diamond", 25_000, 50, 20),
    _mold("Amethyst", 5_000, 15, 9.5),
    _mold("Gold", 750, 9, 6),
    _mold("Silver", 100, 5, 3.5),
    _mold("Iron", 20, 3, 2),
    _mold("Bronze", 5, 1.75, 1.5),
    _mold("Copper", 1, 1.2, 1.2),
])

# Same odds as items, but health/damage/exp/cash columns instead of price/damage.
ENEMY_TIERS: TierTable[EnemyTier] = TierTable("enemy", [
    _enemy("Zenith", 20_000_000, 10000, 500, 100, 120),
    _enemy("Universal", 950_000, 4000, 200, 50, 60),
    _enemy("Cosmic", 650_000, 1000, 150, 20, 25),
    _enemy("Divine", 400_000, 750, 100, 13, 16),
    _enemy("Mythical+2", 120_000, 500, 80, 10, 12),
    _enemy("Mythical+1", 70_000, 550, 65, 7.75, 9),
    _enemy("Mythical", 25_000, 300, 40, 6, 7),
    _enemy("Legendary+2", 10_000, 100, 27.25, 4.5, 6),
    _enemy("Legendary+1", 5_000, 75, 20, 4, 5),
    _enemy("Legendary", 1_250, 50, 15, 3.25, 4.5),
    _enemy("Epic+2", 700, 35, 9, 2.5, 3.5),
    _enemy("Epic+1", 275, 25, 6.75, 2.25, 3),
    _enemy("Epic", 150, 17.75, 5, 2.1, 2.5),
    _enemy("Rare+2", 100, 10, 4, 1.8, 2.2),
    _enemy("Rare+1", 50, 8.6, 3.25, 1.65, 2),
    _enemy("Rare", 45, 7, 2.5, 1.5, 1.8),
    _enemy("Uncommon+2", 20, 5.5, 2, 1.2, 1.5),
    _enemy("Uncommon+1", 10, 4.2, 1.7, 1.15, 1.3),
    _enemy("Uncommon", 6, 3.75, 1.5, 1.1, 1.2),
    _enemy("Common+2", 2, 2, 1.25, 1.05, 1.1),
    _enemy("Common+1", 1.5, 1.875, 1.1, 1.03, 1.05),
    _enemy("Common", 1, 1.5, 1, 1, 1.0),
])


# --------------------------
# Weapons and areas
# --------------------------

@dataclass(frozen=True)
class WeaponType:
    name: str
    type_id: int
    base_damage: float
    base_defense: float
    mold_level_required: int


@dataclass(frozen=True)
class Area:
    name: str
    luck_mult: float
    elite_mult: float
    level_requirement: int
    drops_items: bool
    champion: bool = False  # extra multiplier stack + guaranteed drop


WEAPON_TYPES: List[WeaponType] = [
    WeaponType("Sword", 1, 4, 10, 0),
    WeaponType("Sniper", 2, 20, 5, 10),
    WeaponType("Bomb", 3, 10, 6, 20),
    WeaponType("Molotov", 4, 10, 6, 50),
    WeaponType("Car", 5, 10, 6, 50),
    WeaponType("Scythe", 6, 10, 6, 100),
    WeaponType("Train", 7, 10, 6, 100),
    WeaponType("Lance", 8, 10, 6, 250),
]

AREAS: List[Area] = [
    Area("Champions Hall", 10000, 1, 100, True, champion=True),
    Area("Elite Hall", 400, 1000, 60, True),
    Area("Adept Hall", 40, 500, 25, False),
    Area("Beginner Hall", 5, 10, 1, False),
]


@dataclass(frozen=True)
class Catalog:
    """Everything the generators read; injected into each session."""
    rarity: TierTable[RarityTier]
    mold: TierTable[MoldTier]
    enemy: TierTable[EnemyTier]
    weapons: Tuple[WeaponType, ...]
    areas: Tuple[Area, ...]

    def __post_init__(self):
        if not self.weapons_for_mold_level(1):
            raise ContentError("catalog: no weapon is available at mold level 1")
        if not self.areas:
            raise ContentError("catalog: no areas")
        names = [a.name for a in self.areas]
        if len(set(names)) != len(names):
            raise ContentError("catalog: duplicate area names")

    def area(self, name: str) -> Optional[Area]:
        for a in self.areas:
            if a.name == name:
                return a
        return None

    def weapon(self, name: str) -> Optional[WeaponType]:
        for w in self.weapons:
            if w.name == name:
                return w
        return None

    def weapons_for_mold_level(self, mold_level: int) -> List[WeaponType]:
        return [w for w in self.weapons if w.mold_level_required <= mold_level]


DEFAULT_CATALOG = Catalog(
    rarity=RARITY_TIERS,
    mold=MOLD_TIERS,
    enemy=ENEMY_TIERS,
    weapons=tuple(WEAPON_TYPES),
    areas=tuple(AREAS),
)


# --------------------------
# Tier resolution
# --------------------------

@dataclass(frozen=True)
class TierResult:
    name: str
    roll: int
    range_start: int
    range_end: int
    row: Any
    odds: float  # "1 in N" for this roll

    @property
    def multipliers(self) -> Tuple[float, ...]:
        return row_multipliers(self.row)


def max_roll(multiplier: float) -> int:
    """Upper bound of a roll; a bigger multiplier shrinks it towards the rare rows."""
    return max(1, math.floor(MAX_VALUE / max(1.0, multiplier)))


def resolve_tier(roll: int, table: TierTable, luck_multiplier: float = 1.0) -> TierResult:
    """Map a roll in ``[1, max_roll(luck_multiplier)]`` to its tier row.

    A row owns ``(previous threshold, threshold]``; the first row starts at 0.
    Rolls outside every range fall back to the lowest tier.
    """
    ceiling = max_roll(luck_multiplier)
    odds = ceiling / roll if roll > 0 else float(ceiling)
    prev = 0
    for row in table:
        if prev < roll <= row.threshold:
            return TierResult(row.name, roll, prev, row.threshold, row, odds)
        prev = row.threshold
    last = table.lowest
    start = table.rows[-2].threshold if len(table) > 1 else 0
    return TierResult(last.name, roll, start, last.threshold, last, odds)


def table_view(table: TierTable) -> List[Dict[str, Any]]:
    # for /api/content
    out = []
    for row in table:
        d = {f.name: getattr(row, f.name) for f in fields(row)}
        d["odds"] = round(MAX_VALUE / row.threshold, 1)
        d.pop("threshold")
        out.append(d)
    return out
