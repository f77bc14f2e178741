from __future__ import annotations

import copy
import logging
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Union

import numpy as np

from .env import Action
from .model import encode_batch
from .storage import ModelStore, model_key
from .world import Team

logger = logging.getLogger(__name__)

NUM_ACTIONS = len(Action)
EXPLOIT_DEVIATION = 0.05  # chance of a random action even when acting greedily


@dataclass(frozen=True)
class Experience:
    state: np.ndarray
    action: int
    reward: float
    next_state: np.ndarray
    done: bool


class ReplayBuffer:
    """Bounded FIFO of one agent's transitions; sampling is uniform with replacement."""

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self.buffer: Deque[Experience] = deque(maxlen=capacity)

    def push(self, experience: Experience) -> None:
        self.buffer.append(experience)

    def sample(self, batch_size: int, rng: Optional[np.random.Generator] = None) -> List[Experience]:
        rng = rng or np.random.default_rng()
        indices = rng.integers(0, len(self.buffer), size=batch_size)
        return [self.buffer[i] for i in indices]

    def __len__(self) -> int:
        return len(self.buffer)


# Exploration strategies -------------------------------------------------


class ExplorationPolicy:
    """Picks the action taken on an exploration step of epsilon-greedy selection."""

    name = "base"

    def sample(self, state: np.ndarray, team: Team, rng: np.random.Generator) -> int:
        raise NotImplementedError


class UniformExploration(ExplorationPolicy):
    name = "uniform"

    def sample(self, state: np.ndarray, team: Team, rng: np.random.Generator) -> int:
        return int(rng.integers(0, NUM_ACTIONS))


class TerritoryBiasedExploration(ExplorationPolicy):
    """
    Weighted exploration that rarely stays still. In home territory the step toward
    the enemy side is favoured; outside it, a flag carrier favours the step toward home.
    """

    name = "territory"
    stay_weight = 0.2
    bias_weight = 3.0

    def weights(self, state: np.ndarray, team: Team) -> np.ndarray:
        weights = np.ones(NUM_ACTIONS, dtype=np.float64)
        rel_x = state[-1]
        carrying = state[-2] == 1
        toward_enemy = Action.RIGHT if team == Team.RED else Action.LEFT
        toward_home = Action.LEFT if team == Team.RED else Action.RIGHT
        in_home_territory = (team == Team.RED and rel_x < 0) or (team == Team.BLUE and rel_x > 0)
        if in_home_territory:
            weights[toward_enemy] = self.bias_weight
        elif carrying:
            weights[toward_home] = self.bias_weight
        weights[Action.STAY] = self.stay_weight
        return weights

    def sample(self, state: np.ndarray, team: Team, rng: np.random.Generator) -> int:
        weights = self.weights(state, team)
        r = rng.random() * weights.sum()
        cumulative = 0.0
        for action, weight in enumerate(weights):
            cumulative += weight
            if r <= cumulative:
                return action
        return int(rng.integers(0, NUM_ACTIONS))


EXPLORATION_POLICIES: Dict[str, Callable[[], ExplorationPolicy]] = {
    UniformExploration.name: UniformExploration,
    TerritoryBiasedExploration.name: TerritoryBiasedExploration,
}


def make_exploration(name: str) -> ExplorationPolicy:
    try:
        return EXPLORATION_POLICIES[name]()
    except KeyError:
        raise ValueError(
            f"Unknown exploration strategy {name!r}; expected one of {sorted(EXPLORATION_POLICIES)}"
        ) from None


# Background fitting -----------------------------------------------------


class TrainingQueue:
    """Single-worker executor: fits for one agent run in the background, one at a time, in order."""

    def __init__(self, name: str = "fit"):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._pending: Deque[Future] = deque()

    def submit(self, fn: Callable[..., None], *args) -> Future:
        future = self._executor.submit(fn, *args)
        self._pending.append(future)
        return future

    def completed(self) -> List[Future]:
        """Pop finished futures in submission order without blocking."""
        done: List[Future] = []
        while self._pending and self._pending[0].done():
            done.append(self._pending.popleft())
        return done

    def drain(self) -> List[Future]:
        """Block until every submitted fit has finished and return them all."""
        futures = list(self._pending)
        self._pending.clear()
        wait(futures)
        return futures

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def __len__(self) -> int:
        return len(self._pending)


# Learned policy ---------------------------------------------------------


class PolicyAgent:
    """
    Independent DQN learner for one roster slot: online Q-network, periodically
    synchronized target network, and a bounded experience replay buffer.
    """

    def __init__(
        self,
        agent_id: str,
        team: Union[Team, str],
        q_model,
        target_model=None,
        *,
        learning_rate: float = 0.001,
        discount_factor: float = 0.95,
        exploration_rate: float = 0.2,
        exploration: Optional[ExplorationPolicy] = None,
        buffer: Optional[ReplayBuffer] = None,
        batch_size: int = 32,
        training_interval: int = 4,
        seed: Optional[int] = None,
        training_queue: Optional[TrainingQueue] = None,
    ) -> None:
        self.agent_id = agent_id
        self.team = Team(team)
        self.q_model = q_model
        self.target_model = target_model if target_model is not None else copy.deepcopy(q_model)
        self.learning_rate = learning_rate
        self.discount_factor = discount_factor
        self.exploration_rate = exploration_rate
        self.exploration = exploration or TerritoryBiasedExploration()
        self.buffer = buffer if buffer is not None else ReplayBuffer()
        self.batch_size = batch_size
        self.training_interval = training_interval
        self.rng = np.random.default_rng(seed)
        self.training_queue = training_queue
        self.is_training = False

        self.step_count = 0
        self._fits_submitted = 0
        self.total_reward = 0.0
        self.episode_reward = 0.0
        self.success_rate = 0.0

        self.sync_target()

    # Acting -------------------------------------------------------------
    def greedy_action(self, state: np.ndarray) -> int:
        q_values = self.q_model.predict_q(encode_batch([state]))[0]
        return int(np.argmax(q_values))

    def select_action(self, state: np.ndarray, is_training: Optional[bool] = None) -> int:
        """Epsilon-greedy while training; ``is_training`` defaults to the agent's training mode."""
        if is_training is None:
            is_training = self.is_training
        if is_training and self.rng.random() < self.exploration_rate:
            return self.exploration.sample(state, self.team, self.rng)
        action = self.greedy_action(state)
        if self.rng.random() < EXPLOIT_DEVIATION:
            return int(self.rng.integers(0, NUM_ACTIONS))
        return action

    def set_training_mode(self, is_training: bool) -> None:
        self.is_training = is_training

    # Learning -----------------------------------------------------------
    def remember(self, state: np.ndarray, action: int, reward: float, next_state: np.ndarray, done: bool) -> None:
        self.buffer.push(
            Experience(state=state, action=int(action), reward=float(reward), next_state=next_state, done=bool(done))
        )
        self.total_reward += reward
        self.episode_reward += reward
        if done:
            self.success_rate = 0.95 * self.success_rate + 0.05 * (1.0 if reward > 0 else 0.0)
            self.episode_reward = 0.0

    def replay(self) -> bool:
        """Run one Q-learning update from a sampled batch. Returns False when the buffer is too small."""
        if len(self.buffer) < self.batch_size:
            return False
        batch = self.buffer.sample(self.batch_size, self.rng)
        obs_batch = encode_batch([t.state for t in batch])
        next_obs_batch = encode_batch([t.next_state for t in batch])
        actions = np.array([t.action for t in batch], dtype=np.int64)
        rewards = np.array([t.reward for t in batch], dtype=np.float32)
        dones = np.array([t.done for t in batch], dtype=np.float32)

        # TD targets from the target network; untaken actions keep the online prediction.
        next_max = np.max(self.target_model.predict_q(next_obs_batch), axis=1)
        targets = rewards + self.discount_factor * next_max * (1.0 - dones)
        q_target_full = np.array(self.q_model.predict_q(obs_batch), dtype=np.float32, copy=True)
        q_target_full[np.arange(self.batch_size), actions] = targets

        if self.training_queue is None:
            self._fit(obs_batch, q_target_full)
            self._on_fit_complete()
        else:
            self._fits_submitted += 1
            snapshot = self._fits_submitted % self.training_interval == 0
            self.training_queue.submit(self._fit_in_background, obs_batch, q_target_full, snapshot)
        return True

    def _fit(self, obs_batch: np.ndarray, q_target_full: np.ndarray) -> None:
        self.q_model.fit_q(obs_batch, q_target_full, verbose=0)

    def _fit_in_background(self, obs_batch: np.ndarray, q_target_full: np.ndarray, snapshot: bool):
        # Runs on the queue's only worker, so the copy finishes before the next fit starts.
        self._fit(obs_batch, q_target_full)
        return copy.deepcopy(self.q_model.model) if snapshot else None

    def _on_fit_complete(self, target_snapshot=None) -> None:
        self.step_count += 1
        if self.step_count % self.training_interval != 0:
            return
        if target_snapshot is not None:
            self.target_model.model = target_snapshot
        else:
            self.sync_target()
        logger.debug("%s synced target network at fit %d", self.agent_id, self.step_count)

    def _harvest(self, finished: List[Future]) -> int:
        for future in finished:
            self._on_fit_complete(future.result())
        return len(finished)

    def poll_training(self) -> int:
        """Apply bookkeeping for background fits that have finished. Returns how many completed."""
        if self.training_queue is None:
            return 0
        return self._harvest(self.training_queue.completed())

    def wait_for_training(self) -> int:
        if self.training_queue is None:
            return 0
        return self._harvest(self.training_queue.drain())

    def sync_target(self) -> None:
        # Deep copy the estimator so the target never shares parameters with the online model.
        self.target_model.model = copy.deepcopy(self.q_model.model)

    def update_parameters(self, learning_rate: float, discount_factor: float, exploration_rate: float) -> None:
        self.learning_rate = learning_rate
        self.discount_factor = discount_factor
        self.exploration_rate = exploration_rate
        if hasattr(self.q_model, "set_learning_rate"):
            self.q_model.set_learning_rate(learning_rate)

    # Persistence --------------------------------------------------------
    @property
    def model_key(self) -> str:
        return model_key(self.agent_id)

    def save_model(self, store: ModelStore) -> bool:
        return store.save(self.model_key, self.q_model.model)

    def accepts(self, payload) -> bool:
        """A restorable payload is an estimator of the same class as the online model."""
        return payload is not None and isinstance(payload, type(self.q_model.model))

    def load_model(self, store: ModelStore) -> bool:
        payload = store.load(self.model_key)
        if not self.accepts(payload):
            if payload is not None:
                logger.warning("%s: stored model is a %s, not a usable estimator", self.agent_id, type(payload).__name__)
            return False
        self.restore(payload)
        return True

    def restore(self, payload) -> None:
        # Queued fits still target the old estimator; let them land before swapping it out.
        self.wait_for_training()
        self.q_model.model = payload
        if hasattr(self.q_model, "set_learning_rate"):
            self.q_model.set_learning_rate(self.learning_rate)
        self.sync_target()

    def stats(self) -> Dict[str, float]:
        return {
            "total_reward": self.total_reward,
            "episode_reward": self.episode_reward,
            "success_rate": self.success_rate,
            "step_count": self.step_count,
            "buffer_size": len(self.buffer),
        }

    def close(self) -> None:
        if self.training_queue is not None:
            self.wait_for_training()
            self.training_queue.shutdown()
