import itertools
import pathlib
import sys

import numpy as np
import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "src"))

from ctf_ma_env import Action, ControllerConfig, GameController, InMemoryModelStore, RewardWeights  # noqa: E402
from ctf_ma_env.storage import PickleModelStore  # noqa: E402
from ctf_ma_env.tasks import task_presets  # noqa: E402


class DummyQ:
    _ids = itertools.count()

    def __init__(self, action_dim: int = len(Action)):
        self.action_dim = action_dim
        self.model = {"id": next(self._ids), "fits": 0}

    def predict_q(self, obs_batch: np.ndarray) -> np.ndarray:
        vals = np.zeros((obs_batch.shape[0], self.action_dim), dtype=np.float32)
        vals[:, 0] = 1.0
        return vals

    def fit_q(self, obs_batch: np.ndarray, target_q: np.ndarray, verbose: int = 0) -> None:
        self.model["fits"] += 1


def _controller(**overrides) -> GameController:
    cfg = ControllerConfig(seed=0, **overrides)
    return GameController(cfg, q_model_factory=DummyQ, store=InMemoryModelStore())


def test_update_is_noop_while_paused_and_honours_frame_skip():
    ctrl = _controller()
    assert ctrl.update() is None
    ctrl.start()
    assert ctrl.update() is None
    result = ctrl.update()
    assert result is not None
    assert set(result.rewards) == set(ctrl.agents)
    assert ctrl.env.get_game_state()["episode_steps"] == 1
    ctrl.pause()
    assert ctrl.update() is None


def test_flag_position_rules():
    ctrl = _controller()
    assert not ctrl.update_flag_position("red", 15, 5)
    assert not ctrl.update_flag_position("blue", 9, 5)
    assert not ctrl.update_flag_position("blue", 10, 7)
    assert not ctrl.update_flag_position("green", 3, 3)
    assert not ctrl.update_flag_position("red", -1, 3)
    assert ctrl.env.world.red_flag.position == (2, 10)

    assert ctrl.update_flag_position("red", 5, 5)
    assert ctrl.update_flag_position("blue", 10, 5)
    ctrl.env.reset()
    assert ctrl.env.world.red_flag.position == (5, 5)
    assert ctrl.env.world.blue_flag.position == (10, 5)


def test_obstacle_rules():
    ctrl = _controller()
    assert ctrl.add_obstacle(5, 5)
    assert not ctrl.add_obstacle(5, 5)
    assert not ctrl.add_obstacle(2, 10)
    assert not ctrl.add_obstacle(10, 9)
    assert not ctrl.add_obstacle(20, 0)
    assert (5, 5) in ctrl.get_game_state()["walls"]
    assert ctrl.remove_obstacle(5, 5)
    assert not ctrl.remove_obstacle(10, 7)
    assert (10, 7) in ctrl.env.world.walls


def test_update_parameters_validates_before_applying():
    ctrl = _controller()
    with pytest.raises(ValueError):
        ctrl.update_parameters(learning_rate=0.005, team_size=6)
    assert ctrl.config.learning_rate == 0.001
    assert len(ctrl.agents) == 6

    with pytest.raises(ValueError):
        ctrl.update_parameters(reward_weights={"offense": 3.0})
    with pytest.raises(ValueError):
        ctrl.update_parameters(reward_weights={"stealth": 1.0})
    with pytest.raises(ValueError):
        ctrl.update_parameters(epsilon=0.1)
    with pytest.raises(ValueError):
        ctrl.update_parameters(pretrained_strategy="RECKLESS")


def test_update_parameters_propagates_and_rebuilds_rosters():
    ctrl = _controller()
    ctrl.update_parameters(
        team_size=2,
        learning_rate=0.005,
        discount_factor=0.9,
        exploration_rate=0.5,
        reward_weights={"offense": 0.5, "defense": 2.0, "cooperation": 0.0},
        pretrained_strategy="DEFENSIVE",
    )
    assert set(ctrl.agents) == {"red-0", "red-1", "blue-0", "blue-1"}
    assert len(ctrl.env.world.red_team) == 2
    assert len(ctrl.behaviours["blue"]) == 2
    assert ctrl.pretrained_strategy == "DEFENSIVE"
    assert ctrl.env.config.reward_weights == RewardWeights(offense=0.5, defense=2.0, cooperation=0.0)
    for agent in ctrl.agents.values():
        assert (agent.learning_rate, agent.discount_factor, agent.exploration_rate) == (0.005, 0.9, 0.5)


def test_training_stops_after_max_episodes():
    ctrl = _controller(max_episode_steps=3, frame_skip=1)
    ctrl.train(2)
    assert ctrl.is_training and ctrl.is_running
    for _ in range(20):
        ctrl.update()
        if not ctrl.is_training:
            break
    assert not ctrl.is_training
    assert ctrl.episode_count == 2
    assert ctrl.metrics.draws == 2
    assert ctrl.metrics.episode_steps == [3, 3]
    assert len(ctrl.metrics.episode_rewards) == 2
    assert set(ctrl.metrics.episode_rewards[0]) == {"red", "blue"}
    assert all(len(agent.buffer) == 6 for agent in ctrl.agents.values())
    assert all(not agent.is_training for agent in ctrl.agents.values())

    metrics = ctrl.get_performance_metrics()
    assert metrics["total_episodes"] == 2
    assert metrics["red_win_rate"] == 0.0 and metrics["blue_win_rate"] == 0.0


def test_scripted_mode_does_not_collect_experience():
    ctrl = _controller(frame_skip=1)
    ctrl.set_pretrained_mode(True, "AGGRESSIVE")
    ctrl.train(5)
    for _ in range(10):
        assert ctrl.update() is not None
    assert ctrl.pretrained_strategy == "AGGRESSIVE"
    assert all(len(agent.buffer) == 0 for agent in ctrl.agents.values())

    ctrl.set_pretrained_mode(True, "UNKNOWN")
    assert ctrl.pretrained_strategy == "AGGRESSIVE"


def test_reset_stops_running_and_training():
    ctrl = _controller(frame_skip=1)
    ctrl.train(10)
    ctrl.update()
    ctrl.reset()
    assert not ctrl.is_running
    assert not ctrl.is_training
    assert ctrl.episode_count == 0
    state = ctrl.get_game_state()
    assert state["episode"] == 0
    assert state["episode_steps"] == 0
    assert state["red_agents"] == 3 and state["blue_agents"] == 3
    assert set(state["heatmap"]) == {"red", "blue"}


def test_load_agents_is_all_or_nothing():
    store = InMemoryModelStore()
    ctrl = GameController(ControllerConfig(seed=0), q_model_factory=DummyQ, store=store)
    saved = {agent_id: dict(agent.q_model.model) for agent_id, agent in ctrl.agents.items()}
    assert ctrl.save_agents()

    for agent in ctrl.agents.values():
        agent.q_model.model = {"id": -1, "fits": 0}
    del store._blobs["agent-blue-2"]
    assert not ctrl.load_agents()
    assert all(agent.q_model.model["id"] == -1 for agent in ctrl.agents.values())

    ctrl.save_agents()
    for agent_id, agent in ctrl.agents.items():
        agent.q_model.model = dict(saved[agent_id])
    assert ctrl.load_agents()
    assert all(agent.q_model.model["id"] == -1 for agent in ctrl.agents.values())


def test_async_training_harvests_fits():
    ctrl = _controller(frame_skip=1, async_training=True, max_episode_steps=500)
    ctrl.train(1)
    for _ in range(34):
        ctrl.update()
    ctrl.wait_for_training()
    assert all(agent.step_count >= 1 for agent in ctrl.agents.values())
    ctrl.close()


def test_task_presets_build_controllers():
    presets = task_presets()
    assert set(presets) == {"classic", "duel", "skirmish", "defensive_drill"}
    for task in presets.values():
        ctrl = GameController(task.controller_config, q_model_factory=DummyQ, store=InMemoryModelStore())
        assert len(ctrl.agents) == 2 * task.controller_config.team_size
        ctrl.close()


def test_load_agents_reports_corrupt_or_foreign_files(tmp_path):
    store = PickleModelStore(tmp_path)
    ctrl = GameController(ControllerConfig(seed=0), q_model_factory=DummyQ, store=store)
    originals = {agent_id: agent.q_model.model for agent_id, agent in ctrl.agents.items()}

    for agent in ctrl.agents.values():
        store.path_for(agent.model_key).write_bytes(b"\x80\x09garbage")
    assert not ctrl.load_agents()
    assert all(agent.q_model.model is originals[agent_id] for agent_id, agent in ctrl.agents.items())

    assert ctrl.save_agents()
    store.save("agent-red-1", "a string, not an estimator")
    assert not ctrl.load_agents()
    assert all(agent.q_model.model is originals[agent_id] for agent_id, agent in ctrl.agents.items())
