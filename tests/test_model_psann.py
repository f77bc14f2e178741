import pathlib
import sys

import numpy as np

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "src"))

from ctf_ma_env import Action, CaptureTheFlagEnv, EnvConfig, Team  # noqa: E402
from ctf_ma_env.env import OBS_DIM  # noqa: E402
from ctf_ma_env.model import PSANNQNetwork, QNetworkConfig, build_default_q_model, encode_batch  # noqa: E402
from ctf_ma_env.rl import PolicyAgent  # noqa: E402
from ctf_ma_env.storage import PickleModelStore  # noqa: E402


def _small_cfg() -> QNetworkConfig:
    return QNetworkConfig(hidden_layers=1, hidden_units=8, batch_size=4, epochs=1)


def test_psann_q_network_fits_and_predicts():
    q_model = PSANNQNetwork(action_dim=len(Action), obs_dim=OBS_DIM, psann_cfg=_small_cfg())
    assert not q_model.is_fitted()

    batch = np.random.randn(6, OBS_DIM).astype(np.float32)
    targets = np.random.randn(6, len(Action)).astype(np.float32)
    q_model.fit_q(batch, targets, verbose=0)
    assert q_model.is_fitted()
    preds = q_model.predict_q(batch)
    assert preds.shape == (6, len(Action))
    assert preds.dtype == np.float32


def test_default_q_model_is_warm_started_on_env_observations():
    env = CaptureTheFlagEnv(EnvConfig(seed=0))
    q_model = build_default_q_model(_small_cfg())
    assert q_model.is_fitted()
    obs = encode_batch(list(env.observations().values()))
    assert q_model.predict_q(obs).shape == (6, len(Action))


def test_set_learning_rate_updates_estimator():
    q_model = PSANNQNetwork(psann_cfg=_small_cfg())
    q_model.set_learning_rate(0.005)
    assert q_model.cfg.lr == 0.005
    assert q_model.model.lr == 0.005


def test_saved_agent_reloads_with_identical_greedy_actions(tmp_path):
    env = CaptureTheFlagEnv(EnvConfig(seed=0))
    states = list(env.observations().values())

    trained = PolicyAgent("red-0", Team.RED, build_default_q_model(_small_cfg()), seed=0)
    for state in states * 6:
        trained.remember(state, Action.RIGHT, 1.0, state, False)
    trained.batch_size = 4
    assert trained.replay()

    store = PickleModelStore(tmp_path)
    assert trained.save_model(store)

    restored = PolicyAgent("red-0", Team.RED, build_default_q_model(_small_cfg()), seed=1)
    assert restored.load_model(store)
    expected = [trained.greedy_action(s) for s in states]
    assert [restored.greedy_action(s) for s in states] == expected
    assert np.allclose(
        restored.q_model.predict_q(encode_batch(states)),
        trained.q_model.predict_q(encode_batch(states)),
        atol=1e-5,
    )


def test_replay_keeps_training_the_same_network():
    q_model = build_default_q_model(_small_cfg())
    agent = PolicyAgent("red-0", Team.RED, q_model, batch_size=4, seed=0)
    state = np.zeros(OBS_DIM, dtype=np.float32)
    for _ in range(4):
        agent.remember(state, Action.RIGHT, 1.0, state, False)

    before = q_model.model.model_
    assert agent.replay()
    assert q_model.model.model_ is before
    assert agent.replay()
    assert q_model.model.model_ is before


def test_learning_rate_change_reaches_warm_started_fit():
    q_model = build_default_q_model(_small_cfg())
    q_model.set_learning_rate(0.005)
    batch = np.random.randn(4, OBS_DIM).astype(np.float32)
    q_model.fit_q(batch, np.zeros((4, len(Action)), dtype=np.float32), verbose=0)
    assert q_model.model._optimizer_.param_groups[0]["lr"] == 0.005
