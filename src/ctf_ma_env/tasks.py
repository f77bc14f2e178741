from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from .controller import ControllerConfig
from .env import RewardWeights


@dataclass
class TaskSpec:
    name: str
    description: str
    controller_config: ControllerConfig


def task_presets() -> Dict[str, TaskSpec]:
    """Return predefined match setups with tuned configs."""
    return {
        "classic": TaskSpec(
            name="classic",
            description="Default 20x20 arena, three agents per side, balanced reward weights.",
            controller_config=ControllerConfig(),
        ),
        "duel": TaskSpec(
            name="duel",
            description="One agent per side on a small board; focus on grabbing and returning the flag.",
            controller_config=ControllerConfig(
                grid_size=14,
                team_size=1,
                max_episode_steps=250,
                exploration_rate=0.3,
                reward_weights=RewardWeights(offense=1.5, defense=0.5, cooperation=0.0),
            ),
        ),
        "skirmish": TaskSpec(
            name="skirmish",
            description="Five agents per side on a wide board; rewards lean toward staying together.",
            controller_config=ControllerConfig(
                grid_size=24,
                team_size=5,
                max_episode_steps=600,
                reward_weights=RewardWeights(offense=1.0, defense=1.0, cooperation=1.5),
            ),
        ),
        "defensive_drill": TaskSpec(
            name="defensive_drill",
            description="Three agents per side with defense-heavy shaping and uniform exploration.",
            controller_config=ControllerConfig(
                team_size=3,
                max_episode_steps=400,
                exploration="uniform",
                reward_weights=RewardWeights(offense=0.5, defense=2.0, cooperation=1.0),
            ),
        ),
    }
