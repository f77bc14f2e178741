import pathlib
import sys

import numpy as np

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "src"))

from ctf_ma_env import Action, CaptureTheFlagEnv, EnvConfig, Team  # noqa: E402
from ctf_ma_env.env import ENEMY, ENEMY_FLAG, OBS_DIM, OWN_FLAG, VIEW_RADIUS, VIEW_SIZE  # noqa: E402
from ctf_ma_env.scripted import (  # noqa: E402
    Role,
    ScriptedPolicy,
    assign_roles,
    build_team_policies,
    pretrained_action,
    scripted_action,
)


def _obs(rel_x: float, has_flag: float = 0.0, marks=()) -> np.ndarray:
    state = np.zeros(OBS_DIM, dtype=np.float32)
    for (x, y), code in marks:
        state[y * VIEW_SIZE + x] = code
    state[-2] = has_flag
    state[-1] = rel_x
    return state


def test_assign_roles_truncates_and_pads():
    assert assign_roles(1, "BALANCED") == [Role.OFFENSE]
    assert assign_roles(3, "AGGRESSIVE") == [Role.OFFENSE, Role.OFFENSE, Role.SUPPORT]
    assert assign_roles(5, "DEFENSIVE") == [
        Role.DEFENSE,
        Role.DEFENSE,
        Role.SUPPORT,
        Role.OFFENSE,
        Role.DEFENSE,
    ]
    assert assign_roles(2, "NOPE") == [Role.OFFENSE, Role.DEFENSE]


def test_offense_steers_toward_visible_enemy_flag():
    rng = np.random.default_rng(0)
    # red raider in enemy territory, flag two columns right and one row up
    obs = _obs(0.4, marks=[((VIEW_RADIUS + 2, VIEW_RADIUS - 1), ENEMY_FLAG)])
    assert scripted_action(obs, None, Role.OFFENSE, Team.RED, rng) == Action.RIGHT
    # tie between axes resolves vertically
    obs = _obs(0.4, marks=[((VIEW_RADIUS + 1, VIEW_RADIUS + 1), ENEMY_FLAG)])
    assert scripted_action(obs, None, Role.OFFENSE, Team.RED, rng) == Action.DOWN


def test_defense_intercepts_nearest_enemy():
    rng = np.random.default_rng(0)
    obs = _obs(
        -0.6,
        marks=[
            ((VIEW_RADIUS - 4, VIEW_RADIUS), ENEMY),
            ((VIEW_RADIUS, VIEW_RADIUS - 2), ENEMY),
            ((VIEW_RADIUS + 1, VIEW_RADIUS), OWN_FLAG),
        ],
    )
    assert scripted_action(obs, None, Role.DEFENSE, Team.RED, rng) == Action.UP


def test_defense_without_flag_in_view_heads_home_then_out():
    rng = np.random.default_rng(0)
    assert scripted_action(_obs(0.3), None, Role.DEFENSE, Team.RED, rng) == Action.LEFT
    assert scripted_action(_obs(-0.3), None, Role.DEFENSE, Team.RED, rng) == Action.RIGHT
    assert scripted_action(_obs(-0.3), None, Role.DEFENSE, Team.BLUE, rng) == Action.RIGHT
    assert scripted_action(_obs(0.3), None, Role.DEFENSE, Team.BLUE, rng) == Action.LEFT


def test_support_escorts_teammate_carrier():
    rng = np.random.default_rng(0)
    game_state = {"blue_flag_holder": "red-0", "red_flag_holder": None}
    own_flag = [((VIEW_RADIUS, VIEW_RADIUS), OWN_FLAG)]
    assert scripted_action(_obs(0.5, marks=own_flag), game_state, Role.SUPPORT, Team.RED, rng) == Action.LEFT
    assert scripted_action(_obs(-0.5, marks=own_flag), game_state, Role.SUPPORT, Team.RED, rng) == Action.RIGHT


def test_scripted_actions_stay_in_range_on_live_games():
    env = CaptureTheFlagEnv(EnvConfig(seed=3))
    rng = np.random.default_rng(3)
    behaviours = {
        team.value: build_team_policies(team, env.team_size, strategy, rng)
        for team, strategy in ((Team.RED, "AGGRESSIVE"), (Team.BLUE, "DEFENSIVE"))
    }
    for _ in range(60):
        game_state = env.get_game_state(include_heatmap=False)
        actions = {
            agent_id: pretrained_action(agent_id, obs, game_state, behaviours, rng)
            for agent_id, obs in env.observations().items()
        }
        assert all(0 <= a < len(Action) for a in actions.values())
        env.step(actions)


def test_unassigned_agent_falls_back_to_random_action():
    rng = np.random.default_rng(0)
    behaviours = {"red": [ScriptedPolicy(Role.OFFENSE, Team.RED, rng)]}
    for _ in range(20):
        action = pretrained_action("red-4", _obs(-0.5), None, behaviours, rng)
        assert 0 <= action < len(Action)
