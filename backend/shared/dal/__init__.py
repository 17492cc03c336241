"""Data access layer: persisted entity models shared by every service."""

from shared.dal.models import (
    Achievement,
    GameMode,
    LeaderboardEntry,
    Lobby,
    LobbyMembership,
    LobbyStatus,
    Player,
    PlayerAchievement,
    Race,
    RaceResult,
    RaceStatus,
    Rarity,
)

__all__ = [
    "Achievement",
    "GameMode",
    "LeaderboardEntry",
    "Lobby",
    "LobbyMembership",
    "LobbyStatus",
    "Player",
    "PlayerAchievement",
    "Race",
    "RaceResult",
    "RaceStatus",
    "Rarity",
]
