"""
BattleGym — Kill-Switch

Public interface:
  KillSwitchController    — activate / deactivate / status / is_active
  KillSwitchBackend       — ABC for where the flag lives
  LocalKillSwitchBackend  — process memory (default, cleared on restart)
  RedisKillSwitchBackend  — durable, shared across processes
"""

from battlegym.systems.killswitch.backends import (
    KillSwitchBackend,
    LocalKillSwitchBackend,
    RedisKillSwitchBackend,
)
from battlegym.systems.killswitch.service import KillSwitchController

__all__ = [
    "KillSwitchBackend",
    "KillSwitchController",
    "LocalKillSwitchBackend",
    "RedisKillSwitchBackend",
]
