# game.py
# Game core: session state, progression, item/enemy generation, combat,
# the sell area, the tick scheduler and the save format.

from __future__ import annotations
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging, math, random, time, uuid

import content
from content import Area, Catalog, TierTable

logger = logging.getLogger(__name__)

SAVE_VERSION = 1

# ---- utilities ----

def now_ts() -> float:
    return time.time()

def make_uid(prefix: str = "e") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:10]}"

def round_half_up(value: float, digits: int = 0) -> float:
    # Math.round semantics: halves always go up, unlike round()
    scale = 10 ** digits
    return math.floor(value * scale + 0.5) / scale

def seeded_rng(session: "GameSession") -> random.Random:
    # deterministic rng through a counter
    seed = int(session.seed)
    ctr = int(session.rng_ctr)
    session.rng_ctr = ctr + 1
    mix = (seed ^ (ctr * 0x9E3779B1)) & 0xFFFFFFFF
    return random.Random(mix)


class Failure(str, Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_AMOUNT = "invalid_amount"
    TARGET_NOT_FOUND = "target_not_found"
    LEVEL_TOO_LOW = "level_too_low"
    NO_WEAPON = "no_weapon"
    DEFEATED = "defeated"
    INVALID_CHOICE = "invalid_choice"


@dataclass
class Result:
    ok: bool
    reason: Optional[Failure] = None
    item: Optional["Item"] = None


class MalformedSavedState(ValueError):
    """A save that cannot be read at all; the loader falls back to a new session."""


# ---- events ----

ITEM_GENERATED = "item_generated"
ENEMY_DEFEATED = "enemy_defeated"
LEVELED_UP = "leveled_up"
ITEM_SOLD = "item_sold"


class EventBus:
    def __init__(self):
        self._handlers: Dict[str, List[Callable[..., Any]]] = defaultdict(list)

    def subscribe(self, name: str, handler: Callable[..., Any]) -> None:
        self._handlers[name].append(handler)

    def unsubscribe(self, name: str, handler: Callable[..., Any]) -> None:
        if handler in self._handlers.get(name, []):
            self._handlers[name].remove(handler)

    def emit(self, name: str, **payload: Any) -> None:
        for handler in list(self._handlers.get(name, [])):
            try:
                handler(**payload)
            except Exception:
                logger.exception("handler for %s failed", name)


# ---- progression ----

LEVEL_EXP_BASE = 100
LEVEL_EXP_EXPONENT = 1.05
MULTIPLIER_SPLIT_LEVEL = 50
PRE_SPLIT_OFFSET = 1.05


@dataclass(frozen=True)
class UpgradeTrack:
    name: str
    multiplier_exponent: float  # power-law regime above the split level
    cost_exponent: float
    cost_offset: int


UPGRADE_TRACKS: Dict[str, UpgradeTrack] = {
    "luck": UpgradeTrack("luck", 1.01, 2.1, 4),
    "mold": UpgradeTrack("mold", 1.015, 1.9, 3),
}


def required_exp(level: int) -> int:
    return math.floor(LEVEL_EXP_BASE * level ** LEVEL_EXP_EXPONENT)

def level_multiplier(player_level: int) -> float:
    return 1 + player_level / 100

def compute_multiplier(track_level: int, player_level: int = 1, exponent: float = 1.01) -> float:
    """Multiplier produced by an upgrade track.

    Up to the split level it grows logarithmically, above it as a power law.
    The jump at the split is deliberate. Both stages round like the browser
    client did: two decimals (log regime) or a whole number (power regime),
    then two decimals again after the player level scale is applied.
    """
    level_mult = level_multiplier(player_level)
    if track_level <= MULTIPLIER_SPLIT_LEVEL:
        mult = round_half_up(1 + (math.log1p(track_level) - PRE_SPLIT_OFFSET) * level_mult, 2)
    else:
        mult = round_half_up(track_level ** exponent * level_mult)
    level_scale = 1 + player_level * 0.01
    return round_half_up(mult * level_scale, 2)

def upgrade_cost(track: str, level: int) -> int:
    """Cost of going from ``level`` to ``level + 1`` on a track."""
    t = UPGRADE_TRACKS[track]
    return int(round_half_up(level ** t.cost_exponent)) + t.cost_offset

def bulk_upgrade_cost(track: str, level: int, count: int, limit: Optional[float] = None) -> int:
    """Summed cost of ``count`` levels; stops early once the total passes ``limit``."""
    total = 0
    for lvl in range(level, level + count):
        total += upgrade_cost(track, lvl)
        if limit is not None and total > limit:
            break
    return total


@dataclass
class Progression:
    level: int = 1
    exp: float = 0.0
    luck_level: int = 1
    mold_level: int = 1

    # derived values are recomputed from the levels on every read

    @property
    def luck_multiplier(self) -> float:
        return compute_multiplier(self.luck_level, self.level, UPGRADE_TRACKS["luck"].multiplier_exponent)

    @property
    def mold_multiplier(self) -> float:
        return compute_multiplier(self.mold_level, self.level, UPGRADE_TRACKS["mold"].multiplier_exponent)

    @property
    def enemy_luck_multiplier(self) -> float:
        return round_half_up(level_multiplier(self.level) ** 2.5, 2)

    @property
    def player_luck_multiplier(self) -> float:
        return level_multiplier(self.level)

    def track_level(self, track: str) -> int:
        return self.luck_level if track == "luck" else self.mold_level

    def set_track_level(self, track: str, level: int) -> None:
        if track == "luck":
            self.luck_level = level
        else:
            self.mold_level = level


# ---- entities ----

@dataclass
class Item:
    id: int
    odds: float  # combined "1 in N" shown to the player
    mold: str
    rarity: str
    price: float
    weapon: str
    damage: float
    defense: float

    @property
    def label(self) -> str:
        return f"{self.rarity} {self.mold} {self.weapon}"


@dataclass
class Enemy:
    uid: str
    name: str
    elite: bool
    health: int
    damage: int
    exp: int
    cash: int
    odds: float
    spawned_at: float
    despawn_after: int

    def expired(self, now: float) -> bool:
        return now - self.spawned_at >= self.despawn_after


SELL_DELAY = 30.0


@dataclass
class SellEntry:
    item: Item
    enqueued_at: float
    delay: float = SELL_DELAY

    @property
    def due_at(self) -> float:
        return self.enqueued_at + self.delay

    def remaining(self, now: float) -> float:
        return max(0.0, self.due_at - now)


class SellQueue:
    """Items waiting to be cashed out; owns its items until sold or cancelled."""

    def __init__(self, entries: Optional[List[SellEntry]] = None):
        self.entries: List[SellEntry] = list(entries or [])

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def __contains__(self, item_id: object) -> bool:
        return any(e.item.id == item_id for e in self.entries)

    def enqueue(self, item: Item, now: float, delay: float = SELL_DELAY) -> SellEntry:
        entry = SellEntry(item=item, enqueued_at=float(now), delay=float(delay))
        self.entries.append(entry)
        return entry

    def tick(self, now: float) -> List[Item]:
        """Remove and return every item whose delay has elapsed, as one batch."""
        due = [e for e in self.entries if now >= e.due_at]
        if due:
            self.entries = [e for e in self.entries if now < e.due_at]
        return [e.item for e in due]

    def cancel(self, item_id: int) -> Optional[Item]:
        for i, entry in enumerate(self.entries):
            if entry.item.id == item_id:
                return self.entries.pop(i).item
        return None


# ---- settings ----

@dataclass
class GameSettings:
    auto_sell_threshold: float = 100
    storage_sort: str = "Price"

    def set_auto_sell_threshold(self, value: Any) -> bool:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if not math.isfinite(value) or value <= 0:
            return False
        self.auto_sell_threshold = value
        return True

    def set_storage_sort(self, value: Any) -> bool:
        if value not in content.STORAGE_SORTS:
            return False
        self.storage_sort = value
        return True


# ---- session ----

NOTICE_LIMIT = 50


@dataclass
class GameSession:
    """All mutable state of one player; nothing here is shared between players."""

    progression: Progression = field(default_factory=Progression)
    money: float = 0.0
    inventory: List[Item] = field(default_factory=list)
    equipped: Optional[Item] = None
    recycled_ids: List[int] = field(default_factory=list)
    next_item_id: int = 0
    sell_area: SellQueue = field(default_factory=SellQueue)
    enemies: Dict[str, List[Enemy]] = field(default_factory=dict)
    settings: GameSettings = field(default_factory=GameSettings)
    seed: int = field(default_factory=lambda: random.randint(1, 2_000_000_000))
    rng_ctr: int = 0
    timers: Dict[str, float] = field(default_factory=dict)
    notices: List[str] = field(default_factory=list)
    updated_at: float = field(default_factory=now_ts)
    catalog: Catalog = field(default_factory=lambda: content.DEFAULT_CATALOG, repr=False)
    events: EventBus = field(default_factory=EventBus, repr=False, compare=False)

    def __post_init__(self):
        for area in self.catalog.areas:
            self.enemies.setdefault(area.name, [])

    def find_item(self, item_id: int) -> Optional[Item]:
        for item in self.inventory:
            if item.id == item_id:
                return item
        return None

    def find_enemy(self, area_name: str, uid: str) -> Optional[Enemy]:
        for enemy in self.enemies.get(area_name, []):
            if enemy.uid == uid:
                return enemy
        return None


def default_session(catalog: Optional[Catalog] = None, seed: Optional[int] = None) -> GameSession:
    kwargs: Dict[str, Any] = {"catalog": catalog or content.DEFAULT_CATALOG}
    if seed is not None:
        kwargs["seed"] = int(seed)
    return GameSession(**kwargs)

def notify(session: GameSession, msg: str) -> None:
    session.notices.append(msg)
    session.notices = session.notices[-NOTICE_LIMIT:]

def add_experience(session: GameSession, amount: float) -> int:
    """Award experience and resolve every level it pays for; returns levels gained."""
    prog = session.progression
    prog.exp += max(0.0, amount)
    gained = 0
    while prog.exp >= required_exp(prog.level):
        prog.exp -= required_exp(prog.level)
        prog.level += 1
        gained += 1
    if gained:
        logger.debug("level up: %d (+%d)", prog.level, gained)
        session.events.emit(LEVELED_UP, level=prog.level, levels=gained)
    return gained


@dataclass
class UpgradeResult:
    success: bool
    total_cost: int = 0
    reason: Optional[Failure] = None
    level: int = 0


def purchase_upgrade(session: GameSession, track: str, count: int) -> UpgradeResult:
    """Buy ``count`` levels on a track, all or nothing."""
    if track not in UPGRADE_TRACKS:
        return UpgradeResult(False, reason=Failure.INVALID_CHOICE)
    prog = session.progression
    current = prog.track_level(track)
    if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
        return UpgradeResult(False, reason=Failure.INVALID_AMOUNT, level=current)
    total = bulk_upgrade_cost(track, current, count, limit=session.money)
    if session.money < total:
        return UpgradeResult(False, total_cost=total, reason=Failure.INSUFFICIENT_FUNDS, level=current)
    session.money -= total
    prog.set_track_level(track, current + count)
    logger.info("%s upgraded %d -> %d for %d", track, current, current + count, total)
    return UpgradeResult(True, total_cost=total, level=current + count)


# ---- item generation ----

ITEM_BASE_PRICE = 4.5
ITEM_PRICE_FACTOR = 0.95
LOOT_BASE_PRICE = 5
RARITY_COST_EXPONENT = 1.25
RARITY_COST_DIVISOR = 160
RARITY_COST_CAP = 1.85
RARE_LOG_ODDS = 10_000


def rarity_cost_scaling(rank: int) -> float:
    """Price inflation by rarity rank (1 = most common), capped."""
    if rank <= 0:
        return 1.0
    return min(1 + rank ** RARITY_COST_EXPONENT / RARITY_COST_DIVISOR, RARITY_COST_CAP)

def display_odds(odds: float) -> float:
    if odds < 1000:
        return round_half_up(odds, 1)
    return int(round_half_up(odds))

def allocate_item_id(session: GameSession) -> int:
    if session.recycled_ids:
        return session.recycled_ids.pop()
    item_id = session.next_item_id
    session.next_item_id += 1
    return item_id

def pick_weapon(session: GameSession, rng: random.Random) -> content.WeaponType:
    return rng.choice(session.catalog.weapons_for_mold_level(session.progression.mold_level))

def generate_item(session: GameSession, rng: Optional[random.Random] = None, now: Optional[float] = None) -> Item:
    """Roll one item and route it to the sell area or the inventory."""
    rng = rng or seeded_rng(session)
    now = now_ts() if now is None else now
    cat = session.catalog
    prog = session.progression

    weapon = pick_weapon(session, rng)
    luck = prog.luck_multiplier
    mold_mult = prog.mold_multiplier
    rarity = content.resolve_tier(rng.randint(1, content.max_roll(luck)), cat.rarity, luck)
    mold = content.resolve_tier(rng.randint(1, content.max_roll(mold_mult)), cat.mold, mold_mult)
    odds = display_odds(rarity.odds * mold.odds)

    price = (ITEM_BASE_PRICE
             * rarity.row.price_mult * ITEM_PRICE_FACTOR
             * mold.row.price_mult
             * rarity_cost_scaling(cat.rarity.rank_of(rarity.name)))
    item = Item(
        id=allocate_item_id(session),
        odds=odds,
        mold=mold.name,
        rarity=rarity.name,
        price=price,
        weapon=weapon.name,
        damage=weapon.base_damage * rarity.row.damage_mult,
        defense=weapon.base_defense * (rarity.row.damage_mult * 0.5),
    )

    auto_sold = odds < session.settings.auto_sell_threshold
    if auto_sold:
        session.sell_area.enqueue(item, now)
    else:
        session.inventory.append(item)
    if odds >= RARE_LOG_ODDS:
        logger.info("rare item rolled: %s (1 in %s)", item.label, odds)
    session.events.emit(ITEM_GENERATED, item=item, auto_sold=auto_sold)
    return item

def enemy_loot(session: GameSession, enemy: Enemy, rng: Optional[random.Random] = None) -> Item:
    """Bonus drop for elite and champion kills; rarity follows the enemy's tier."""
    rng = rng or seeded_rng(session)
    cat = session.catalog
    prog = session.progression
    rarity = cat.rarity.get(enemy.name) or cat.rarity.lowest
    weapon = pick_weapon(session, rng)

    # the player level bonus also applies to the mold roll on drops
    mold_luck = prog.mold_multiplier * prog.player_luck_multiplier
    ceiling = max(1, math.floor(content.MAX_VALUE / (mold_luck if mold_luck > 0 else 1)))
    mold = content.resolve_tier(rng.randint(1, ceiling), cat.mold, mold_luck)

    return Item(
        id=allocate_item_id(session),
        odds=enemy.odds,
        mold=mold.name,
        rarity=rarity.name,
        price=(LOOT_BASE_PRICE * rarity.price_mult * mold.row.price_mult
               * rarity_cost_scaling(cat.rarity.rank_of(rarity.name))),
        weapon=weapon.name,
        damage=weapon.base_damage * rarity.damage_mult,
        defense=weapon.base_defense * (rarity.damage_mult * 0.5),
    )


# ---- enemies ----

ENEMY_BASE = {"health": 50, "damage": 5, "exp": 20, "cash": 50}
ELITE_BONUS = {"health": 20, "damage": 10, "exp": 20, "cash": 35}
CHAMPION_BONUS = {"health": 200, "damage": 200, "exp": 750, "cash": 1500}
ELITE_ROLL_MAX = 1000


def despawn_seconds(rank: int) -> int:
    # rarer enemies stay longer
    return math.floor(120 * math.log(rank + 5) / math.log(1.2))

def generate_enemy(area: Area, enemy_luck_multiplier: float, rng: Optional[random.Random] = None,
                   now: Optional[float] = None, table: Optional[TierTable] = None) -> Enemy:
    rng = rng or random.Random()
    now = now_ts() if now is None else now
    table = table or content.ENEMY_TIERS

    luck = enemy_luck_multiplier * area.luck_mult
    tier = content.resolve_tier(rng.randint(1, content.max_roll(luck)), table, luck)
    elite_ceiling = max(1, math.floor(ELITE_ROLL_MAX / max(1, area.elite_mult)))
    elite = rng.randint(1, elite_ceiling) == 1

    row = tier.row
    mults = {"health": row.health_mult, "damage": row.damage_mult, "exp": row.exp_mult, "cash": row.cash_mult}
    for stat in mults:
        if elite:
            mults[stat] *= ELITE_BONUS[stat]
        if area.champion:
            mults[stat] *= CHAMPION_BONUS[stat]

    enemy = Enemy(
        uid=make_uid("enemy"),
        name=tier.name,
        elite=elite,
        health=math.floor(ENEMY_BASE["health"] * mults["health"]),
        damage=math.floor(ENEMY_BASE["damage"] * mults["damage"]),
        exp=math.floor(ENEMY_BASE["exp"] * mults["exp"]),
        cash=math.floor(ENEMY_BASE["cash"] * mults["cash"]),
        odds=tier.odds,
        spawned_at=now,
        despawn_after=despawn_seconds(table.rank_of(tier.name)),
    )
    if tier.odds >= RARE_LOG_ODDS:
        if area.champion:
            logger.info("a %s champion spawned in %s (1 in %d)", enemy.name, area.name, tier.odds)
        else:
            logger.info("a %s%s enemy spawned in %s (1 in %d)",
                        "elite " if elite else "", enemy.name, area.name, tier.odds)
    return enemy

def sort_enemies(enemies: List[Enemy], table: TierTable) -> None:
    # rarest first; unknown names sink to the bottom
    enemies.sort(key=lambda e: (table.index_of(e.name) if e.name in table else len(table)))

def spawn_enemies(session: GameSession, now: float, rng: Optional[random.Random] = None) -> List[Enemy]:
    """One spawn per area, then an expiry sweep."""
    spawned = []
    for area in session.catalog.areas:
        enemy = generate_enemy(area, session.progression.enemy_luck_multiplier,
                               rng or seeded_rng(session), now, session.catalog.enemy)
        bucket = session.enemies.setdefault(area.name, [])
        bucket.append(enemy)
        sort_enemies(bucket, session.catalog.enemy)
        spawned.append(enemy)
    despawn_expired(session, now)
    return spawned

def despawn_expired(session: GameSession, now: float) -> int:
    removed = 0
    for area_name, bucket in session.enemies.items():
        alive = [e for e in bucket if not e.expired(now)]
        removed += len(bucket) - len(alive)
        session.enemies[area_name] = alive
    return removed


# ---- combat ----

PLAYER_COMBAT_HEALTH = 100


@dataclass
class CombatOutcome:
    victory: bool
    turns: int
    player_health: int


@dataclass
class CombatResult:
    victory: bool
    reason: Optional[Failure] = None
    exp_gained: int = 0
    cash_gained: int = 0
    levels_gained: int = 0
    drop: Optional[Item] = None
    turns: int = 0


def resolve_combat(weapon: Item, enemy: Enemy) -> CombatOutcome:
    """Player strikes first each turn; the enemy answers if it survives.

    Player health always starts at ``PLAYER_COMBAT_HEALTH``. Turn counts are
    computed directly from the per-turn damage, which matches stepping the
    exchange one blow at a time but stays cheap for champion health pools.
    """
    hit = math.floor(weapon.damage)
    taken = max(0, math.floor(enemy.damage / max(1, weapon.defense)))
    player_hp = PLAYER_COMBAT_HEALTH
    if enemy.health <= 0:
        return CombatOutcome(True, 1, player_hp)
    if hit <= 0:
        return CombatOutcome(False, 0, player_hp)

    turns_to_win = -(-enemy.health // hit)
    if taken <= 0:
        return CombatOutcome(True, turns_to_win, player_hp)
    turns_to_lose = -(-player_hp // taken)
    if turns_to_win <= turns_to_lose:
        return CombatOutcome(True, turns_to_win, player_hp - taken * (turns_to_win - 1))
    return CombatOutcome(False, turns_to_lose, player_hp - taken * turns_to_lose)

def fight(session: GameSession, area_name: str, enemy_uid: str, rng: Optional[random.Random] = None) -> CombatResult:
    cat = session.catalog
    area = cat.area(area_name)
    if area is None:
        return CombatResult(False, Failure.TARGET_NOT_FOUND)
    if session.progression.level < area.level_requirement:
        return CombatResult(False, Failure.LEVEL_TOO_LOW)
    weapon = session.equipped
    if weapon is None:
        return CombatResult(False, Failure.NO_WEAPON)
    # the despawn sweep may have removed it already
    enemy = session.find_enemy(area.name, enemy_uid)
    if enemy is None:
        return CombatResult(False, Failure.TARGET_NOT_FOUND)

    outcome = resolve_combat(weapon, enemy)
    if not outcome.victory:
        return CombatResult(False, Failure.DEFEATED, turns=outcome.turns)

    session.enemies[area.name].remove(enemy)
    session.money += enemy.cash
    levels = add_experience(session, enemy.exp)
    drop = None
    if enemy.elite or area.champion:
        drop = enemy_loot(session, enemy, rng)
        session.inventory.append(drop)
    result = CombatResult(True, exp_gained=enemy.exp, cash_gained=enemy.cash,
                          levels_gained=levels, drop=drop, turns=outcome.turns)
    session.events.emit(ENEMY_DEFEATED, enemy=enemy, area=area, result=result)
    return result


# ---- sell area and inventory ----

def sale_exp(session: GameSession, item: Item) -> float:
    rarity = session.catalog.rarity.get(item.rarity)
    mold = session.catalog.mold.get(item.mold)
    mult = (rarity.exp_mult if rarity else 1) * (mold.exp_mult if mold else 1)
    return item.price * mult

def process_sell_area(session: GameSession, now: float) -> List[Item]:
    sold = session.sell_area.tick(now)
    for item in sold:
        exp = sale_exp(session, item)
        session.money += item.price
        levels = add_experience(session, exp)
        session.recycled_ids.append(item.id)
        session.events.emit(ITEM_SOLD, item=item, exp=exp, levels=levels)
    return sold

def sell_item(session: GameSession, item_id: int, now: Optional[float] = None) -> Result:
    item = session.find_item(item_id)
    if item is None:
        return Result(False, Failure.TARGET_NOT_FOUND)
    session.inventory.remove(item)
    session.sell_area.enqueue(item, now_ts() if now is None else now)
    return Result(True, item=item)

def cancel_sale(session: GameSession, item_id: int) -> Result:
    item = session.sell_area.cancel(item_id)
    if item is None:
        return Result(False, Failure.TARGET_NOT_FOUND)
    session.inventory.append(item)
    return Result(True, item=item)

def equip_item(session: GameSession, item_id: int) -> Result:
    item = session.find_item(item_id)
    if item is None:
        return Result(False, Failure.TARGET_NOT_FOUND)
    session.inventory.remove(item)
    if session.equipped is not None:
        session.inventory.append(session.equipped)
    session.equipped = item
    return Result(True, item=item)

def unequip_item(session: GameSession) -> Result:
    item = session.equipped
    if item is None:
        return Result(False, Failure.TARGET_NOT_FOUND)
    session.inventory.append(item)
    session.equipped = None
    return Result(True, item=item)

_SORT_FIELDS = {"Price": "price", "Damage": "damage", "Defense": "defense", "RNG": "odds"}

def sorted_inventory(session: GameSession) -> List[Item]:
    key = session.settings.storage_sort
    if key == "Rarity":
        table = session.catalog.rarity
        return sorted(session.inventory,
                      key=lambda i: table.index_of(i.rarity) if i.rarity in table else len(table))
    attr = _SORT_FIELDS.get(key, "price")
    return sorted(session.inventory, key=lambda i: getattr(i, attr), reverse=True)


# ---- scheduler ----

DEFAULT_CATCH_UP = 120


@dataclass(frozen=True)
class Timer:
    name: str
    interval: float
    job: Callable[[GameSession, float], Any]
    catch_up: Optional[int] = None  # None: tick()'s limit applies


def _spawn_item_job(session: GameSession, when: float) -> None:
    generate_item(session, now=when)


TIMERS: Tuple[Timer, ...] = (
    Timer("spawn_item", 5.0, _spawn_item_job),
    Timer("spawn_enemies", 5.0, spawn_enemies),
    # resolving at the latest time covers any backlog
    Timer("sell_area", 0.5, process_sell_area, catch_up=1),
    Timer("despawn", 1.0, despawn_expired, catch_up=1),
)


def tick(session: GameSession, now: Optional[float] = None, max_runs: int = DEFAULT_CATCH_UP) -> Dict[str, int]:
    """Run every timer that is due at ``now``; returns how often each fired.

    A timer seen for the first time is armed one interval ahead. A timer that
    falls further behind than its catch-up limit drops the backlog.
    """
    now = now_ts() if now is None else now
    fired: Dict[str, int] = {}
    for timer in TIMERS:
        due = session.timers.get(timer.name)
        if due is None:
            session.timers[timer.name] = now + timer.interval
            continue
        limit = timer.catch_up if timer.catch_up is not None else max_runs
        runs = 0
        if timer.catch_up == 1 and due <= now:
            timer.job(session, now)
            runs = 1
            due = now + timer.interval
        while due <= now and runs < limit:
            timer.job(session, due)
            due += timer.interval
            runs += 1
        if due <= now:
            logger.debug("%s: dropped backlog after %d runs", timer.name, runs)
            due = now + timer.interval
        session.timers[timer.name] = due
        if runs:
            fired[timer.name] = runs
    session.updated_at = now
    return fired


# ---- saves ----

def item_to_dict(item: Item) -> Dict[str, Any]:
    return asdict(item)

def item_from_dict(d: Any) -> Item:
    if not isinstance(d, dict):
        raise MalformedSavedState(f"item is not an object: {d!r}")
    item_id = d.get("id")
    if isinstance(item_id, bool) or not isinstance(item_id, int) or item_id < 0:
        raise MalformedSavedState(f"item has no valid id: {d!r}")
    return Item(
        id=item_id,
        odds=_num(d, "odds", 1.0),
        mold=str(d.get("mold", content.MOLD_TIERS.lowest.name)),
        rarity=str(d.get("rarity", content.RARITY_TIERS.lowest.name)),
        price=_num(d, "price", 0.0),
        weapon=str(d.get("weapon", content.WEAPON_TYPES[0].name)),
        damage=_num(d, "damage", 0.0),
        defense=_num(d, "defense", 0.0),
    )

def enemy_from_dict(d: Any) -> Enemy:
    if not isinstance(d, dict):
        raise MalformedSavedState(f"enemy is not an object: {d!r}")
    uid, name = d.get("uid"), d.get("name")
    if not isinstance(uid, str) or not uid or not isinstance(name, str) or not name:
        raise MalformedSavedState(f"enemy has no uid or name: {d!r}")
    return Enemy(
        uid=uid,
        name=name,
        elite=d.get("elite") is True,
        health=_int(d, "health", 1),
        damage=_int(d, "damage", 0, lo=0),
        exp=_int(d, "exp", 0, lo=0),
        cash=_int(d, "cash", 0, lo=0),
        odds=_num(d, "odds", 1.0),
        spawned_at=_num(d, "spawned_at", now_ts()),
        despawn_after=_int(d, "despawn_after", despawn_seconds(1), lo=0),
    )

def _num(d: Dict[str, Any], key: str, default: float, lo: Optional[float] = None) -> Any:
    v = d.get(key, default)
    if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
        return default
    if lo is not None and v < lo:
        return default
    return v

def _int(d: Dict[str, Any], key: str, default: int, lo: Optional[int] = None) -> int:
    v = _num(d, key, default, lo)
    return int(v)

def _list(d: Dict[str, Any], key: str) -> List[Any]:
    v = d.get(key)
    return v if isinstance(v, list) else []

def _items(raw: List[Any]) -> List[Item]:
    items = []
    for entry in raw:
        try:
            items.append(item_from_dict(entry))
        except MalformedSavedState as e:
            logger.warning("dropping unreadable item: %s", e)
    return items

def to_saved(session: GameSession) -> Dict[str, Any]:
    prog = session.progression
    return {
        "version": SAVE_VERSION,
        "updated_at": session.updated_at,
        "level": prog.level,
        "exp": prog.exp,
        "luck_level": prog.luck_level,
        "mold_level": prog.mold_level,
        "money": session.money,
        "inventory": [item_to_dict(i) for i in session.inventory],
        "equipped": item_to_dict(session.equipped) if session.equipped else None,
        "recycled_ids": list(session.recycled_ids),
        "next_item_id": session.next_item_id,
        "sell_area": [
            {"item": item_to_dict(e.item), "enqueued_at": e.enqueued_at, "delay": e.delay}
            for e in session.sell_area
        ],
        "enemies": {name: [asdict(e) for e in bucket] for name, bucket in session.enemies.items()},
        "settings": asdict(session.settings),
        "seed": session.seed,
        "rng_ctr": session.rng_ctr,
        "timers": dict(session.timers),
        "notices": list(session.notices),
    }

def _migrate_v0(data: Dict[str, Any]) -> Dict[str, Any]:
    # browser-era layout: nested player record, capitalised item keys
    def item(raw: Any) -> Any:
        if not isinstance(raw, dict):
            return raw
        return {
            "id": raw.get("ID"), "odds": raw.get("RNG"), "mold": raw.get("Mold"),
            "rarity": raw.get("Rarity"), "price": raw.get("Price"), "weapon": raw.get("Weapon"),
            "damage": raw.get("Damage"), "defense": raw.get("Defense"),
        }

    player = data.get("player") if isinstance(data.get("player"), dict) else {}
    sell_area = []
    for entry in _list(data, "sell_area"):
        if isinstance(entry, dict):
            sell_area.append({"item": item(entry.get("item")),
                              "enqueued_at": entry.get("time_added"),
                              "delay": entry.get("timer")})
    settings = {}
    if "auto_sell_threshold" in data:
        settings["auto_sell_threshold"] = data["auto_sell_threshold"]
    return {
        "version": 1,
        "level": player.get("level"),
        "exp": player.get("exp"),
        "equipped": item(player.get("equipped")),
        "luck_level": data.get("luck_level"),
        "mold_level": data.get("mold_level"),
        "money": data.get("money"),
        "inventory": [item(i) for i in _list(data, "item_storage")],
        "recycled_ids": _list(data, "recycled_ids"),
        "next_item_id": data.get("item_id_counter"),
        "sell_area": sell_area,
        "settings": settings,
    }

MIGRATIONS: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    0: _migrate_v0,
}

def migrate_saved(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise MalformedSavedState("save is not an object")
    version = data.get("version")
    if version is None:
        version = 0 if ("schema_version" in data or "item_storage" in data) else SAVE_VERSION
    if isinstance(version, bool) or not isinstance(version, int) or version > SAVE_VERSION or version < 0:
        raise MalformedSavedState(f"unsupported save version: {version!r}")
    while version < SAVE_VERSION:
        data = MIGRATIONS[version](data)
        version = int(data.get("version", version + 1))
    return data

def from_saved(data: Any, catalog: Optional[Catalog] = None) -> GameSession:
    """Rebuild a session; missing or mistyped fields take their defaults."""
    try:
        data = migrate_saved(data)
    except MalformedSavedState as e:
        logger.warning("unreadable save, starting fresh: %s", e)
        return default_session(catalog)

    session = default_session(catalog)
    prog = session.progression
    prog.level = _int(data, "level", 1, lo=1)
    prog.exp = float(_num(data, "exp", 0.0, lo=0))
    prog.luck_level = _int(data, "luck_level", 1, lo=1)
    prog.mold_level = _int(data, "mold_level", 1, lo=1)
    session.money = _num(data, "money", 0.0, lo=0)

    session.inventory = _items(_list(data, "inventory"))
    equipped = data.get("equipped")
    if equipped is not None:
        got = _items([equipped])
        session.equipped = got[0] if got else None

    for entry in _list(data, "sell_area"):
        if not isinstance(entry, dict):
            continue
        got = _items([entry.get("item")])
        if got:
            session.sell_area.enqueue(got[0], _num(entry, "enqueued_at", now_ts()),
                                      _num(entry, "delay", SELL_DELAY, lo=0))

    enemies = data.get("enemies") if isinstance(data.get("enemies"), dict) else {}
    for area in session.catalog.areas:
        for raw in enemies.get(area.name, []) if isinstance(enemies.get(area.name), list) else []:
            try:
                session.enemies[area.name].append(enemy_from_dict(raw))
            except MalformedSavedState as e:
                logger.warning("dropping unreadable enemy in %s: %s", area.name, e)

    settings = data.get("settings") if isinstance(data.get("settings"), dict) else {}
    session.settings.set_auto_sell_threshold(settings.get("auto_sell_threshold"))
    session.settings.set_storage_sort(settings.get("storage_sort"))

    session.seed = _int(data, "seed", session.seed)
    session.rng_ctr = _int(data, "rng_ctr", 0, lo=0)
    timers = data.get("timers") if isinstance(data.get("timers"), dict) else {}
    session.timers = {k: float(v) for k, v in timers.items()
                      if isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)}
    session.notices = [str(n) for n in _list(data, "notices")][-NOTICE_LIMIT:]
    session.updated_at = _num(data, "updated_at", now_ts())

    # keep ids unique: the counter moves past every live id, live ids leave the free-list
    live = [i.id for i in session.inventory] + [e.item.id for e in session.sell_area]
    if session.equipped:
        live.append(session.equipped.id)
    session.next_item_id = max(_int(data, "next_item_id", 0, lo=0), max(live, default=-1) + 1)
    used = set(live)
    session.recycled_ids = []
    for i in _list(data, "recycled_ids"):
        if isinstance(i, int) and not isinstance(i, bool) and 0 <= i < session.next_item_id and i not in used:
            session.recycled_ids.append(i)
            used.add(i)

    # exp saved past the requirement (older saves) is resolved here
    add_experience(session, 0)
    return session


# ---- client view ----

def item_view(item: Item) -> Dict[str, Any]:
    v = item_to_dict(item)
    v["label"] = item.label
    v["price"] = round(item.price, 2)
    return v

def session_view(session: GameSession, now: Optional[float] = None) -> Dict[str, Any]:
    now = now_ts() if now is None else now
    prog = session.progression
    return {
        "player": {
            "level": prog.level,
            "exp": prog.exp,
            "exp_needed": required_exp(prog.level),
            "money": round(session.money, 2),
            "luck_level": prog.luck_level,
            "mold_level": prog.mold_level,
            "luck_multiplier": prog.luck_multiplier,
            "mold_multiplier": prog.mold_multiplier,
            "enemy_luck_multiplier": prog.enemy_luck_multiplier,
            "upgrade_costs": {t: upgrade_cost(t, prog.track_level(t)) for t in UPGRADE_TRACKS},
        },
        "equipped": item_view(session.equipped) if session.equipped else None,
        "inventory": [item_view(i) for i in sorted_inventory(session)],
        "sell_area": [
            {"item": item_view(e.item), "remaining": round(e.remaining(now), 1)}
            for e in session.sell_area
        ],
        "areas": [
            {
                "name": a.name,
                "unlocked": prog.level >= a.level_requirement,
                "level_requirement": a.level_requirement,
                "enemies": [
                    {**asdict(e), "time_left": max(0, int(e.spawned_at + e.despawn_after - now))}
                    for e in session.enemies.get(a.name, [])
                ],
            }
            for a in session.catalog.areas
        ],
        "settings": asdict(session.settings),
        "notices": list(session.notices),
    }


# ---- action dispatcher ----

def _as_int(v: Any) -> Optional[int]:
    try:
        return int(v)
    except (TypeError, ValueError):
        return None

def dispatch(session: GameSession, action: Dict[str, Any], now: Optional[float] = None) -> Any:
    typ = action.get("type")
    now = now_ts() if now is None else now

    if typ == "TICK":
        return tick(session, now)

    if typ == "EQUIP":
        res = equip_item(session, _as_int(action.get("item")))
        if res.ok:
            notify(session, f"Equipped {res.item.label}.")
        return res

    if typ == "UNEQUIP":
        res = unequip_item(session)
        if res.ok:
            notify(session, "Weapon unequipped.")
        return res

    if typ == "SELL":
        res = sell_item(session, _as_int(action.get("item")), now)
        if res.ok:
            notify(session, f"{res.item.label} sent to the sell area ({int(SELL_DELAY)}s).")
        return res

    if typ == "CANCEL_SALE":
        res = cancel_sale(session, _as_int(action.get("item")))
        if res.ok:
            notify(session, f"{res.item.label} returned to storage.")
        return res

    if typ == "UPGRADE":
        track = action.get("track")
        count = _as_int(action.get("count", 1))
        res = purchase_upgrade(session, track, count if count is not None else 0)
        if res.success:
            notify(session, f"Upgraded {track} to level {res.level} for ${res.total_cost}.")
        elif res.reason is Failure.INSUFFICIENT_FUNDS:
            notify(session, f"Not enough money: ${res.total_cost} needed.")
        else:
            notify(session, "Invalid upgrade.")
        return res

    if typ == "FIGHT":
        res = fight(session, str(action.get("area", "")), str(action.get("enemy", "")))
        if not res.victory:
            notify(session, {
                Failure.TARGET_NOT_FOUND: "Enemy no longer exists!",
                Failure.LEVEL_TOO_LOW: "Your level is too low for this area.",
                Failure.NO_WEAPON: "You cannot fight without a weapon.",
            }.get(res.reason, "You were defeated!"))
        return res

    if typ == "SET_AUTO_SELL":
        ok = session.settings.set_auto_sell_threshold(action.get("threshold"))
        notify(session, f"Auto sell threshold: 1 in {session.settings.auto_sell_threshold}" if ok else "Invalid value!")
        return Result(ok, None if ok else Failure.INVALID_AMOUNT)

    if typ == "SET_SORT":
        ok = session.settings.set_storage_sort(action.get("sort"))
        return Result(ok, None if ok else Failure.INVALID_CHOICE)

    logger.debug("unknown action: %r", typ)
    return Result(False, Failure.INVALID_CHOICE)
