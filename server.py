# server.py
# Small local Flask server: drives the game clock and takes player actions.
# Run: python server.py  (or flask --app server run)

from __future__ import annotations
from dataclasses import asdict
from typing import Optional
import os, json, logging, tempfile

from flask import Flask, current_app, request, jsonify

import content
import game
from config import AppConfig

logger = logging.getLogger(__name__)


def save_path(save_dir: str, sid: str) -> str:
    safe = "".join(ch for ch in sid if ch.isalnum() or ch in "_-")
    return os.path.join(save_dir, f"{safe}.json")

def load_state(save_dir: str, sid: str) -> game.GameSession:
    p = save_path(save_dir, sid)
    was_corrupt = False
    if os.path.exists(p):
        try:
            with open(p, "r", encoding="utf-8") as f:
                return game.from_saved(json.load(f))
        except json.JSONDecodeError:
            # broken save: keep it aside and start over
            was_corrupt = True
            corrupt = p + ".corrupt"
            if os.path.exists(corrupt):
                corrupt = p + f".{int(game.now_ts())}.corrupt"
            os.replace(p, corrupt)
            logger.warning("save %s is not valid JSON, moved to %s", sid, corrupt)
        except OSError:
            was_corrupt = True
            logger.exception("could not read save %s", sid)
    session = game.default_session()
    if was_corrupt:
        game.notify(session, "Your save was damaged and has been reset.")
    return session

def save_state(save_dir: str, sid: str, session: game.GameSession) -> bool:
    p = save_path(save_dir, sid)
    tmp_fd, tmp_path = tempfile.mkstemp(prefix="save_", suffix=".tmp", dir=save_dir)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            json.dump(game.to_saved(session), f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, p)
        return True
    except OSError:
        logger.exception("could not write save %s", sid)
        return False
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)

def watch_events(session: game.GameSession) -> None:
    """Turn core events into player-facing notices."""

    def on_item(item: game.Item, auto_sold: bool) -> None:
        if item.odds >= game.RARE_LOG_ODDS:
            game.notify(session, f"Rare drop: {item.label} (1 in {item.odds})!")

    def on_sold(item: game.Item, exp: float, levels: int) -> None:
        game.notify(session, f"Sold {item.label} for ${item.price:.2f}.")

    def on_level(level: int, levels: int) -> None:
        game.notify(session, f"Level up! You are now level {level}.")

    def on_defeat(enemy: game.Enemy, area: content.Area, result: game.CombatResult) -> None:
        msg = f"You defeated the {enemy.name}! +{result.exp_gained} EXP, +${result.cash_gained}."
        if result.drop:
            msg += f" You got a {result.drop.label}!"
        game.notify(session, msg)

    session.events.subscribe(game.ITEM_GENERATED, on_item)
    session.events.subscribe(game.ITEM_SOLD, on_sold)
    session.events.subscribe(game.LEVELED_UP, on_level)
    session.events.subscribe(game.ENEMY_DEFEATED, on_defeat)


def _open(sid: str) -> game.GameSession:
    cfg: AppConfig = current_app.config["FORGE"]
    session = load_state(cfg.save_dir, sid)
    watch_events(session)
    game.tick(session, max_runs=cfg.catch_up)
    return session

def _store(sid: str, session: game.GameSession) -> None:
    save_state(current_app.config["FORGE"].save_dir, sid, session)


def create_app(config: Optional[AppConfig] = None) -> Flask:
    cfg = config or AppConfig.from_env()
    os.makedirs(cfg.save_dir, exist_ok=True)
    app = Flask(__name__)
    app.config["FORGE"] = cfg

    @app.post("/api/bootstrap")
    def api_bootstrap():
        data = request.get_json(silent=True) or {}
        sid = data.get("sid")
        if not sid:
            sid = game.make_uid("sid")
            session = game.default_session()
            game.tick(session)
            logger.info("new session %s", sid)
        else:
            session = _open(sid)
        _store(sid, session)
        return jsonify({"sid": sid, "state": game.session_view(session)})

    @app.post("/api/action")
    def api_action():
        data = request.get_json(silent=True) or {}
        sid = data.get("sid")
        action = data.get("action") or {}
        if not sid:
            return jsonify({"error": "missing sid"}), 400
        session = _open(sid)
        try:
            game.dispatch(session, action)
        except Exception as e:
            # the client must not hang on a bad action
            logger.exception("action %r failed for %s", action.get("type"), sid)
            game.notify(session, f"Error: {type(e).__name__}")
        _store(sid, session)
        return jsonify({"sid": sid, "state": game.session_view(session)})

    @app.get("/api/content")
    def api_content():
        cat = content.DEFAULT_CATALOG
        return jsonify({
            "rarities": content.table_view(cat.rarity),
            "molds": content.table_view(cat.mold),
            "enemies": content.table_view(cat.enemy),
            "weapons": [asdict(w) for w in cat.weapons],
            "areas": [asdict(a) for a in cat.areas],
            "storage_sorts": content.STORAGE_SORTS,
            "upgrade_tracks": list(game.UPGRADE_TRACKS),
        })

    @app.get("/api/ping")
    def ping():
        return jsonify({"ok": True})

    return app


if __name__ == "__main__":
    cfg = AppConfig.from_env()
    logging.basicConfig(level=cfg.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    # host=127.0.0.1: local only
    create_app(cfg).run(host=cfg.host, port=cfg.port, debug=cfg.debug)
