"""Server configuration utilities."""

from __future__ import annotations

import os
from dataclasses import dataclass

APP_DIR = os.path.dirname(os.path.abspath(__file__))


def env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(slots=True)
class AppConfig:
    save_dir: str = os.path.join(APP_DIR, "saves")
    host: str = "127.0.0.1"
    port: int = 5173
    debug: bool = False
    log_level: str = "INFO"
    catch_up: int = 120

    @classmethod
    def from_env(cls) -> "AppConfig":
        save_dir = os.getenv("FORGE_SAVE_DIR", os.path.join(APP_DIR, "saves"))
        port = int(os.getenv("FORGE_PORT", "5173"))
        catch_up = int(os.getenv("FORGE_CATCH_UP", "120"))
        log_level = os.getenv("FORGE_LOG_LEVEL", "INFO").upper()
        return cls(
            save_dir=os.path.abspath(os.path.expanduser(save_dir)),
            host=os.getenv("FORGE_HOST", "127.0.0.1"),
            port=port,
            debug=env_flag("FORGE_DEBUG"),
            log_level=log_level,
            catch_up=max(1, catch_up),
        )


__all__ = ["AppConfig"]
