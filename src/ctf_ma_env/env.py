from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Deque, Dict, List, Mapping, Optional, Set

import numpy as np

from .objects import Flag
from .world import AgentEntity, Cell, GridWorld, Team, default_flag_cells, default_walls

logger = logging.getLogger(__name__)

VIEW_RADIUS = 5
VIEW_SIZE = 2 * VIEW_RADIUS + 1
OBS_DIM = VIEW_SIZE * VIEW_SIZE + 2

# Observation cell codes.
EMPTY, WALL, OWN_FLAG, ENEMY_FLAG, TEAMMATE, ENEMY = range(6)

SURVIVAL_BONUS = 0.01
CARRY_BONUS = 1.0
HOMEWARD_SCALE = 5.0
FLAG_APPROACH_SCALE = 10.0
GUARD_SCALE = 5.0
GUARD_RADIUS = 5
INTERCEPT_SCALE = 10.0
TEAMMATE_RADIUS = 3
TEAMMATE_BONUS = 0.1
STATIONARY_GRACE = 3
STATIONARY_PENALTY = 0.1
CAPTURE_BONUS = 20.0


class Action(IntEnum):
    STAY = 0
    UP = 1
    RIGHT = 2
    DOWN = 3
    LEFT = 4

    @property
    def delta(self) -> Cell:
        return _ACTION_DELTAS[self]


_ACTION_DELTAS = {
    Action.STAY: (0, 0),
    Action.UP: (0, -1),
    Action.RIGHT: (1, 0),
    Action.DOWN: (0, 1),
    Action.LEFT: (-1, 0),
}


@dataclass
class RewardWeights:
    offense: float = 1.0
    defense: float = 1.0
    cooperation: float = 1.0

    @classmethod
    def from_mapping(cls, weights: Mapping[str, float]) -> "RewardWeights":
        return cls(
            offense=float(weights.get("offense", 1.0)),
            defense=float(weights.get("defense", 1.0)),
            cooperation=float(weights.get("cooperation", 1.0)),
        )


@dataclass
class EnvConfig:
    grid_size: int = 20
    team_size: int = 3
    max_episode_steps: int = 500
    seed: Optional[int] = None
    heatmap_history: int = 1000  # ticks of positions kept for the heatmap
    reward_weights: RewardWeights = field(default_factory=RewardWeights)


@dataclass
class StepResult:
    states: Dict[str, np.ndarray]
    rewards: Dict[str, float]
    done: bool
    info: Dict[str, object]


def manhattan(a: Cell, b: Cell) -> int:
    return abs(a[0] - b[0]) + abs(a[1] - b[1])


class CaptureTheFlagEnv:
    """Two-team capture-the-flag grid game with shaped per-agent rewards."""

    def __init__(self, config: Optional[EnvConfig] = None):
        self.config = config or EnvConfig()
        if self.config.grid_size < 7:
            raise ValueError("grid_size must be at least 7 to fit both flags and spawn columns.")
        if self.config.team_size < 1:
            raise ValueError("team_size must be positive.")
        self.rng = np.random.default_rng(self.config.seed)
        self.custom_walls: Set[Cell] = set()
        red_home, blue_home = default_flag_cells(self.config.grid_size)
        self.flag_homes: Dict[Team, Cell] = {Team.RED: red_home, Team.BLUE: blue_home}
        self.position_history: Dict[Team, Deque[List[Cell]]] = {
            team: deque(maxlen=self.config.heatmap_history) for team in Team
        }
        self.world: GridWorld
        self.red_score = 0
        self.blue_score = 0
        self.episode = 0
        self.episode_steps = 0
        self.reset()

    @property
    def grid_size(self) -> int:
        return self.config.grid_size

    @property
    def team_size(self) -> int:
        return self.config.team_size

    @property
    def max_episode_steps(self) -> int:
        return self.config.max_episode_steps

    def reset(self, keep_episode: bool = True) -> Dict[str, np.ndarray]:
        walls = default_walls(self.grid_size) | self.custom_walls
        self.world = GridWorld(
            grid_size=self.grid_size,
            red_flag=self.flag_homes[Team.RED],
            blue_flag=self.flag_homes[Team.BLUE],
            walls=walls,
        )
        self.world.spawn_team(Team.RED, self.team_size)
        self.world.spawn_team(Team.BLUE, self.team_size)
        self.red_score = 0
        self.blue_score = 0
        self.episode_steps = 0
        if not keep_episode:
            self.episode = 0
        return self._build_observations()

    def set_team_size(self, team_size: int) -> None:
        if team_size < 1:
            raise ValueError("team_size must be positive.")
        self.config.team_size = team_size
        self.reset()

    def update_reward_weights(self, weights: RewardWeights) -> None:
        self.config.reward_weights = weights

    # Customization primitives ------------------------------------------
    def add_obstacle(self, x: int, y: int) -> None:
        self.custom_walls.add((x, y))
        self.world.walls.add((x, y))

    def remove_obstacle(self, x: int, y: int) -> bool:
        if (x, y) not in self.custom_walls:
            return False
        self.custom_walls.discard((x, y))
        if (x, y) not in default_walls(self.grid_size):
            self.world.walls.discard((x, y))
        return True

    def set_flag_home(self, team: Team, x: int, y: int) -> None:
        self.flag_homes[team] = (x, y)
        self.world.own_flag(team).relocate(x, y)

    # Stepping -----------------------------------------------------------
    def step(self, actions: Mapping[str, int]) -> StepResult:
        roster_ids = {agent.agent_id for agent in self.world.agents()}
        unknown = set(actions) - roster_ids
        if unknown:
            raise KeyError(f"Actions supplied for unknown agents: {sorted(unknown)}")

        for agent in self.world.agents():
            action = actions.get(agent.agent_id)
            if action is not None:
                self.world.move_agent(agent, Action(action).delta)

        self.episode_steps += 1
        flag_captured = self._check_flag_captures()
        self._check_tagging()
        self._record_positions()

        rewards = self._compute_rewards()
        states = self._build_observations()

        episode_length = self.episode_steps
        done = flag_captured or self.episode_steps >= self.max_episode_steps
        if done:
            self.episode += 1
            self.episode_steps = 0
            logger.debug(
                "Episode %d finished after %d steps (red %d - blue %d, captured=%s)",
                self.episode, episode_length, self.red_score, self.blue_score, flag_captured,
            )

        info = {
            "red_score": self.red_score,
            "blue_score": self.blue_score,
            "episode": self.episode,
            "steps": self.episode_steps,
            "episode_length": episode_length,
            "flag_captured": flag_captured,
        }
        return StepResult(states=states, rewards=rewards, done=done, info=info)

    def _check_flag_captures(self) -> bool:
        flag_captured = False
        for team in (Team.RED, Team.BLUE):
            enemy_flag = self.world.enemy_flag(team)
            for agent in self.world.roster(team):
                if not agent.has_flag and agent.position == enemy_flag.position and not enemy_flag.is_held:
                    agent.has_flag = True
                    enemy_flag.pick_up(agent.agent_id)

                if agent.has_flag and self.world.at_home_boundary(agent):
                    agent.has_flag = False
                    enemy_flag.release()
                    self._add_score(team)
                    flag_captured = True
        return flag_captured

    def _add_score(self, team: Team) -> None:
        if team == Team.RED:
            self.red_score += 1
        else:
            self.blue_score += 1

    def score(self, team: Team) -> int:
        return self.red_score if team == Team.RED else self.blue_score

    def _check_tagging(self) -> None:
        half = self.world.half
        for team in (Team.RED, Team.BLUE):
            own_flag = self.world.own_flag(team)
            for defender in self.world.roster(team):
                if not self._on_side(defender.x, team, half):
                    continue
                for intruder in self.world.roster(team.opponent):
                    if self._on_side(intruder.x, team, half) and intruder.position == defender.position:
                        self._tag(intruder, own_flag)

    @staticmethod
    def _on_side(x: int, team: Team, half: float) -> bool:
        # Inclusive of the midline, unlike the reward territory checks.
        return x <= half if team == Team.RED else x >= half

    def _tag(self, agent: AgentEntity, carried_flag: Flag) -> None:
        agent.x = 1 if agent.team == Team.RED else self.grid_size - 2
        agent.y = int(self.rng.integers(0, self.grid_size))
        if agent.has_flag:
            agent.has_flag = False
            carried_flag.return_home()
        logger.debug("Tagged %s, respawned at %s", agent.agent_id, agent.position)

    # Rewards ------------------------------------------------------------
    def _compute_rewards(self) -> Dict[str, float]:
        return {agent.agent_id: self._agent_reward(agent) for agent in self.world.agents()}

    def _agent_reward(self, agent: AgentEntity) -> float:
        world = self.world
        weights = self.config.reward_weights
        team = agent.team
        enemies = world.roster(team.opponent)
        own_flag = world.own_flag(team)
        enemy_flag = world.enemy_flag(team)

        reward = 0.0
        reward += SURVIVAL_BONUS

        # Offense
        if agent.has_flag:
            reward += CARRY_BONUS * weights.offense
            if world.in_own_half(agent):
                home_distance = agent.x if team == Team.RED else self.grid_size - agent.x
                reward += (HOMEWARD_SCALE / (home_distance + 1)) * weights.offense
        elif world.in_enemy_half(agent):
            dist_to_flag = manhattan(agent.position, enemy_flag.position)
            reward += (FLAG_APPROACH_SCALE / (dist_to_flag + 1)) * weights.offense * 0.5

        # Defense
        if world.in_own_half(agent):
            dist_to_flag = manhattan(agent.position, own_flag.position)
            enemy_near_flag = any(
                world.in_enemy_half(enemy) and manhattan(enemy.position, own_flag.position) < GUARD_RADIUS
                for enemy in enemies
            )
            if enemy_near_flag and dist_to_flag < GUARD_RADIUS:
                reward += (GUARD_SCALE / (dist_to_flag + 1)) * weights.defense

            carrier = next((enemy for enemy in enemies if enemy.has_flag), None)
            if carrier is not None and world.in_enemy_half(carrier):
                dist_to_enemy = manhattan(agent.position, carrier.position)
                reward += (INTERCEPT_SCALE / (dist_to_enemy + 1)) * weights.defense

        # Cooperation
        nearby = self._count_teammates_nearby(agent, TEAMMATE_RADIUS)
        if nearby > 0:
            multiplier = 2.0 if world.in_enemy_half(agent) else 1.0
            reward += nearby * TEAMMATE_BONUS * weights.cooperation * multiplier

        # Stationary penalty
        if agent.previous_position == agent.position:
            agent.stationary_count += 1
            if agent.stationary_count > STATIONARY_GRACE:
                reward -= STATIONARY_PENALTY * agent.stationary_count
        else:
            agent.stationary_count = 0
            agent.previous_position = agent.position

        # Capture bonus, edge-triggered per agent
        score = self.score(team)
        if score > 0 and not own_flag.is_held and agent.last_known_score < score:
            reward += CAPTURE_BONUS
            agent.last_known_score = score

        return reward

    def _count_teammates_nearby(self, agent: AgentEntity, radius: int) -> int:
        return sum(
            1
            for mate in self.world.roster(agent.team)
            if mate.agent_id != agent.agent_id and manhattan(agent.position, mate.position) <= radius
        )

    # Observations -------------------------------------------------------
    def _build_observations(self) -> Dict[str, np.ndarray]:
        return {agent.agent_id: self.get_state_for_agent(agent) for agent in self.world.agents()}

    def get_state_for_agent(self, agent: AgentEntity) -> np.ndarray:
        """Encode the 11x11 agent-centred view plus carry flag and signed x position.

        Categories are written in order (walls, own flag, enemy flag, teammates,
        enemies); a later category overwrites an earlier one on the same cell.
        """
        state = np.zeros(OBS_DIM, dtype=np.float32)

        def mark(cell: Cell, code: int) -> None:
            rel_x = cell[0] - agent.x + VIEW_RADIUS
            rel_y = cell[1] - agent.y + VIEW_RADIUS
            if 0 <= rel_x < VIEW_SIZE and 0 <= rel_y < VIEW_SIZE:
                state[rel_y * VIEW_SIZE + rel_x] = code

        for wall in self.world.walls:
            mark(wall, WALL)
        mark(self.world.own_flag(agent.team).position, OWN_FLAG)
        mark(self.world.enemy_flag(agent.team).position, ENEMY_FLAG)
        for mate in self.world.roster(agent.team):
            if mate.agent_id != agent.agent_id:
                mark(mate.position, TEAMMATE)
        for enemy in self.world.roster(agent.team.opponent):
            mark(enemy.position, ENEMY)

        state[-2] = 1.0 if agent.has_flag else 0.0
        state[-1] = (agent.x / self.grid_size) * 2 - 1
        return state

    def observations(self) -> Dict[str, np.ndarray]:
        return self._build_observations()

    # Heatmap / snapshots ------------------------------------------------
    def _record_positions(self) -> None:
        for team in Team:
            self.position_history[team].append([agent.position for agent in self.world.roster(team)])

    def heatmap(self, team: Team) -> np.ndarray:
        """Visit frequency per cell over the recent history, normalized to a max of 1."""
        grid = np.zeros((self.grid_size, self.grid_size), dtype=np.float32)
        for positions in self.position_history[team]:
            for x, y in positions:
                if self.world.in_bounds(x, y):
                    grid[y, x] += 1.0
        peak = grid.max()
        if peak > 0:
            grid /= peak
        return grid

    def get_game_state(self, include_heatmap: bool = True) -> Dict[str, object]:
        world = self.world
        return {
            "grid_size": self.grid_size,
            "red_team": [agent.as_dict() for agent in world.red_team],
            "blue_team": [agent.as_dict() for agent in world.blue_team],
            "red_flag": world.red_flag.as_dict(),
            "blue_flag": world.blue_flag.as_dict(),
            "red_flag_holder": world.red_flag.holder,
            "blue_flag_holder": world.blue_flag.holder,
            "walls": sorted(world.walls),
            "red_score": self.red_score,
            "blue_score": self.blue_score,
            "episode": self.episode,
            "episode_steps": self.episode_steps,
            "heatmap": {team.value: self.heatmap(team) for team in Team} if include_heatmap else None,
        }
