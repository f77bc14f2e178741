"""Hand-written role policies that play from the same observation vector as the DQN agents."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .env import ENEMY, ENEMY_FLAG, OWN_FLAG, VIEW_RADIUS, VIEW_SIZE, Action
from .world import Team

GRID_CELLS = VIEW_SIZE * VIEW_SIZE
CENTER = VIEW_RADIUS


class Role(str, Enum):
    OFFENSE = "offense"
    DEFENSE = "defense"
    SUPPORT = "support"


@dataclass(frozen=True)
class TeamStrategy:
    roles: Tuple[Role, ...]
    description: str


TEAM_STRATEGIES: Dict[str, TeamStrategy] = {
    "BALANCED": TeamStrategy(
        roles=(Role.OFFENSE, Role.DEFENSE, Role.OFFENSE),
        description="Balanced team with both offensive and defensive capabilities",
    ),
    "AGGRESSIVE": TeamStrategy(
        roles=(Role.OFFENSE, Role.OFFENSE, Role.SUPPORT),
        description="Highly aggressive team focused on flag capture",
    ),
    "DEFENSIVE": TeamStrategy(
        roles=(Role.DEFENSE, Role.DEFENSE, Role.SUPPORT),
        description="Defense-oriented team that protects its flag and waits for openings",
    ),
}
DEFAULT_STRATEGY = "BALANCED"
_EXTRA_ROLE_CYCLE = (Role.OFFENSE, Role.DEFENSE, Role.SUPPORT)


def assign_roles(team_size: int, strategy: str = DEFAULT_STRATEGY) -> List[Role]:
    """Roles for a roster: truncate the strategy table, or pad by cycling through every role."""
    roles = list(TEAM_STRATEGIES.get(strategy, TEAM_STRATEGIES[DEFAULT_STRATEGY]).roles)
    if team_size > len(roles):
        extra = team_size - len(roles)
        roles.extend(_EXTRA_ROLE_CYCLE[i % len(_EXTRA_ROLE_CYCLE)] for i in range(extra))
    return roles[:team_size]


# Observation helpers -------------------------------------------------------


def _view(observation: np.ndarray) -> np.ndarray:
    return np.asarray(observation[:GRID_CELLS]).reshape(VIEW_SIZE, VIEW_SIZE)


def _find_first(view: np.ndarray, code: int) -> Optional[Tuple[int, int]]:
    """First (x, y) holding ``code`` in row-major order."""
    ys, xs = np.nonzero(view == code)
    if len(xs) == 0:
        return None
    return int(xs[0]), int(ys[0])


def _find_nearest(view: np.ndarray, code: int) -> Optional[Tuple[int, int]]:
    ys, xs = np.nonzero(view == code)
    if len(xs) == 0:
        return None
    distances = np.abs(xs - CENTER) + np.abs(ys - CENTER)
    best = int(np.argmin(distances))
    return int(xs[best]), int(ys[best])


def _steer(target: Tuple[int, int]) -> int:
    """Step toward a view cell, closing the larger axis gap first (ties go vertical)."""
    x, y = target
    if abs(x - CENTER) > abs(y - CENTER):
        return Action.LEFT if x < CENTER else Action.RIGHT
    return Action.UP if y < CENTER else Action.DOWN


def _pick(rng: np.random.Generator, options: Sequence[int]) -> int:
    return int(options[int(rng.integers(0, len(options)))])


# Role behaviours -------------------------------------------------------------


def _offense(observation: np.ndarray, team: Team, rng: np.random.Generator) -> int:
    to_enemy = Action.RIGHT if team == Team.RED else Action.LEFT
    to_home = Action.LEFT if team == Team.RED else Action.RIGHT
    has_flag = observation[-2] == 1
    rel_x = observation[-1]
    in_enemy_territory = (team == Team.RED and rel_x > 0) or (team == Team.BLUE and rel_x < 0)

    if has_flag:
        if rng.random() < 0.8:
            return to_home
        return Action.UP if rng.random() < 0.5 else Action.DOWN

    if not in_enemy_territory:
        if rng.random() < 0.7:
            return to_enemy
        return _pick(rng, (Action.UP, Action.DOWN, Action.STAY))

    flag_cell = _find_first(_view(observation), ENEMY_FLAG)
    if flag_cell is not None:
        return _steer(flag_cell)

    # Search pattern while the flag is out of view.
    roll = rng.random()
    if roll < 0.4:
        return to_enemy
    if roll < 0.6:
        return Action.UP
    if roll < 0.8:
        return Action.DOWN
    return to_enemy if rng.random() < 0.7 else Action.STAY


def _defense(observation: np.ndarray, team: Team, rng: np.random.Generator) -> int:
    to_enemy = Action.RIGHT if team == Team.RED else Action.LEFT
    to_home = Action.LEFT if team == Team.RED else Action.RIGHT
    rel_x = observation[-1]
    in_home_territory = (team == Team.RED and rel_x < 0) or (team == Team.BLUE and rel_x > 0)
    view = _view(observation)

    enemy_cell = _find_nearest(view, ENEMY)
    if enemy_cell is not None:
        return _steer(enemy_cell)

    flag_cell = _find_first(view, OWN_FLAG)
    if flag_cell is not None:
        distance = abs(flag_cell[0] - CENTER) + abs(flag_cell[1] - CENTER)
        if distance <= 2:
            return _pick(rng, (Action.UP, Action.RIGHT, Action.DOWN, Action.LEFT))
        return _steer(flag_cell)

    # Flag out of view: fall back home first, then push out to find the carrier.
    if not in_home_territory:
        return to_home
    return to_enemy


def _support(
    observation: np.ndarray,
    game_state: Optional[Mapping[str, object]],
    team: Team,
    rng: np.random.Generator,
) -> int:
    to_enemy = Action.RIGHT if team == Team.RED else Action.LEFT
    to_home = Action.LEFT if team == Team.RED else Action.RIGHT
    has_flag = observation[-2] == 1
    rel_x = observation[-1]
    in_enemy_territory = (team == Team.RED and rel_x > 0) or (team == Team.BLUE and rel_x < 0)
    own_flag_taken = _find_first(_view(observation), OWN_FLAG) is None

    teammate_has_flag = False
    if game_state:
        holder_key = "blue_flag_holder" if team == Team.RED else "red_flag_holder"
        teammate_has_flag = bool(game_state.get(holder_key))

    if teammate_has_flag:
        return to_home if in_enemy_territory else to_enemy

    if own_flag_taken and not in_enemy_territory:
        return to_enemy if rng.random() < 0.7 else _pick(rng, (Action.UP, Action.DOWN))

    if not has_flag and not in_enemy_territory:
        return to_enemy if rng.random() < 0.7 else _pick(rng, (Action.UP, Action.DOWN, Action.STAY))

    if has_flag:
        return to_home if rng.random() < 0.8 else _pick(rng, (Action.UP, Action.DOWN))

    roll = rng.random()
    if roll < 0.3:
        return to_home if in_enemy_territory else to_enemy
    if roll < 0.6:
        return _pick(rng, (Action.UP, Action.DOWN))
    return _pick(rng, (Action.LEFT, Action.RIGHT))


def scripted_action(
    observation: np.ndarray,
    game_state: Optional[Mapping[str, object]],
    role: Union[Role, str],
    team: Union[Team, str],
    rng: Optional[np.random.Generator] = None,
) -> int:
    """Pure dispatch from ``(observation, game_state, role, team)`` to an action index."""
    rng = rng if rng is not None else np.random.default_rng()
    role = Role(role)
    team = Team(team)
    if role == Role.OFFENSE:
        return int(_offense(observation, team, rng))
    if role == Role.DEFENSE:
        return int(_defense(observation, team, rng))
    return int(_support(observation, game_state, team, rng))


class ScriptedPolicy:
    """A role bound to a team; interchangeable with ``PolicyAgent.select_action``."""

    def __init__(self, role: Union[Role, str], team: Union[Team, str], rng: Optional[np.random.Generator] = None):
        self.role = Role(role)
        self.team = Team(team)
        self.rng = rng if rng is not None else np.random.default_rng()

    def select_action(self, observation: np.ndarray, game_state: Optional[Mapping[str, object]] = None) -> int:
        return scripted_action(observation, game_state, self.role, self.team, self.rng)

    def __repr__(self) -> str:
        return f"ScriptedPolicy(role={self.role.value}, team={self.team.value})"


def build_team_policies(
    team: Union[Team, str],
    team_size: int,
    strategy: str = DEFAULT_STRATEGY,
    rng: Optional[np.random.Generator] = None,
) -> List[ScriptedPolicy]:
    rng = rng if rng is not None else np.random.default_rng()
    return [ScriptedPolicy(role, team, rng) for role in assign_roles(team_size, strategy)]


def pretrained_action(
    agent_id: str,
    observation: np.ndarray,
    game_state: Optional[Mapping[str, object]],
    behaviours: Mapping[str, Sequence[ScriptedPolicy]],
    rng: np.random.Generator,
) -> int:
    """Route an agent id like ``"red-1"`` to its team's scripted policy, or act randomly if none exists."""
    team, _, index = agent_id.partition("-")
    policies = behaviours.get(team, ())
    slot = int(index) if index.isdigit() else -1
    if not 0 <= slot < len(policies):
        return int(rng.integers(0, len(Action)))
    return policies[slot].select_action(observation, game_state)
