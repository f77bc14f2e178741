from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Callable, Dict, List, Mapping, Optional, Union

import numpy as np

from .env import CaptureTheFlagEnv, EnvConfig, RewardWeights, StepResult
from .model import QNetworkConfig, build_default_q_model
from .rl import PolicyAgent, TrainingQueue, make_exploration
from .scripted import DEFAULT_STRATEGY, TEAM_STRATEGIES, ScriptedPolicy, build_team_policies, pretrained_action
from .storage import ModelStore, PickleModelStore
from .world import Team

logger = logging.getLogger(__name__)

PARAMETER_RANGES = {
    "team_size": (1, 5),
    "learning_rate": (0.0001, 0.01),
    "discount_factor": (0.5, 0.99),
    "exploration_rate": (0.01, 1.0),
}
REWARD_WEIGHT_RANGE = (0.0, 2.0)
UPDATABLE_PARAMETERS = set(PARAMETER_RANGES) | {"reward_weights", "pretrained_strategy", "use_pretrained_agents"}


@dataclass
class ControllerConfig:
    grid_size: int = 20
    team_size: int = 3
    max_episode_steps: int = 500
    learning_rate: float = 0.001
    discount_factor: float = 0.95
    exploration_rate: float = 0.2
    reward_weights: RewardWeights = field(default_factory=RewardWeights)
    frame_skip: int = 2  # process every n-th update() call
    max_episodes: int = 1000
    exploration: str = "territory"  # or "uniform"
    async_training: bool = False
    use_pretrained_agents: bool = False
    pretrained_strategy: str = DEFAULT_STRATEGY
    seed: Optional[int] = None
    model_dir: str = "models"
    q_network: QNetworkConfig = field(default_factory=QNetworkConfig)


@dataclass
class EpisodeMetrics:
    red_wins: int = 0
    blue_wins: int = 0
    draws: int = 0
    episode_rewards: List[Dict[str, float]] = field(default_factory=list)
    episode_steps: List[int] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


class GameController:
    """
    Owns the environment, one PolicyAgent per roster slot and the scripted behaviours,
    and drives them one tick at a time from an external clock via ``update()``.
    """

    def __init__(
        self,
        config: Optional[ControllerConfig] = None,
        *,
        q_model_factory: Optional[Callable[[], object]] = None,
        store: Optional[ModelStore] = None,
    ) -> None:
        self.config = config or ControllerConfig()
        if self.config.frame_skip < 1:
            raise ValueError("frame_skip must be at least 1.")
        make_exploration(self.config.exploration)  # fail fast on an unknown name
        self.rng = np.random.default_rng(self.config.seed)
        self.env = CaptureTheFlagEnv(
            EnvConfig(
                grid_size=self.config.grid_size,
                team_size=self.config.team_size,
                max_episode_steps=self.config.max_episode_steps,
                seed=self.config.seed,
                reward_weights=replace(self.config.reward_weights),
            )
        )
        self.q_model_factory = q_model_factory or self._default_q_model
        self.store = store or PickleModelStore(self.config.model_dir)

        self.is_running = False
        self.is_training = False
        self.frame_count = 0
        self.episode_count = 0
        self.max_episodes = self.config.max_episodes
        self.metrics = EpisodeMetrics()
        self.prev_states: Dict[str, np.ndarray] = {}
        self.prev_actions: Dict[str, int] = {}
        self._episode_rewards = {team.value: 0.0 for team in Team}

        self.use_pretrained_agents = self.config.use_pretrained_agents
        self.pretrained_strategy = self.config.pretrained_strategy
        self.agents: Dict[str, PolicyAgent] = {}
        self.behaviours: Dict[str, List[ScriptedPolicy]] = {}
        self._create_agents()
        self._initialize_behaviours()

    # Construction -------------------------------------------------------
    def _default_q_model(self):
        return build_default_q_model(replace(self.config.q_network, lr=self.config.learning_rate))

    def _create_agents(self) -> None:
        for agent in self.agents.values():
            agent.close()
        self.agents = {}
        for team in Team:
            for i in range(self.env.team_size):
                agent_id = f"{team.value}-{i}"
                self.agents[agent_id] = PolicyAgent(
                    agent_id,
                    team,
                    self.q_model_factory(),
                    learning_rate=self.config.learning_rate,
                    discount_factor=self.config.discount_factor,
                    exploration_rate=self.config.exploration_rate,
                    exploration=make_exploration(self.config.exploration),
                    seed=int(self.rng.integers(0, 2**31 - 1)),
                    training_queue=TrainingQueue(name=f"fit-{agent_id}") if self.config.async_training else None,
                )
                self.agents[agent_id].set_training_mode(self.is_training)

    def _initialize_behaviours(self) -> None:
        self.behaviours = {
            team.value: build_team_policies(team, self.env.team_size, self.pretrained_strategy, self.rng)
            for team in Team
        }

    # Control surface ----------------------------------------------------
    def start(self) -> None:
        self.is_running = True

    def pause(self) -> None:
        self.is_running = False

    def train(self, episodes: int = 1000) -> None:
        self.start_training(episodes)
        self.start()

    def start_training(self, episodes: int = 1000) -> None:
        self.is_training = True
        self.max_episodes = episodes
        self.episode_count = 0
        self.metrics = EpisodeMetrics()
        for agent in self.agents.values():
            agent.set_training_mode(True)
        self.env.reset()
        self._clear_episode_cache()
        logger.info("Training started for %d episodes", episodes)

    def stop_training(self) -> None:
        self.is_training = False
        for agent in self.agents.values():
            agent.set_training_mode(False)
        logger.info("Training stopped after %d episodes", self.episode_count)

    def reset(self) -> None:
        if self.is_training:
            self.stop_training()
        self.is_running = False
        self.env.reset(keep_episode=False)
        self.episode_count = 0
        self.frame_count = 0
        self.metrics = EpisodeMetrics()
        self._clear_episode_cache()

    def set_pretrained_mode(self, enabled: bool, strategy: Optional[str] = DEFAULT_STRATEGY) -> None:
        self.use_pretrained_agents = enabled
        if strategy and strategy in TEAM_STRATEGIES:
            self.pretrained_strategy = strategy
            self._initialize_behaviours()

    def update_parameters(self, **params) -> None:
        """Apply a partial configuration. Everything is validated before anything changes."""
        self._validate_parameters(params)

        for name in ("learning_rate", "discount_factor", "exploration_rate"):
            if name in params:
                setattr(self.config, name, float(params[name]))

        if "reward_weights" in params:
            weights = params["reward_weights"]
            if not isinstance(weights, RewardWeights):
                weights = RewardWeights.from_mapping(weights)
            self.config.reward_weights = weights
            self.env.update_reward_weights(replace(weights))

        team_size = params.get("team_size")
        if team_size is not None and int(team_size) != self.env.team_size:
            self.config.team_size = int(team_size)
            self.env.set_team_size(int(team_size))
            self._create_agents()
            self._initialize_behaviours()
            self._clear_episode_cache()
            logger.info("Team size changed to %d; rosters and agents rebuilt", team_size)

        if params.get("pretrained_strategy"):
            self.pretrained_strategy = params["pretrained_strategy"]
            self._initialize_behaviours()

        if "use_pretrained_agents" in params:
            self.use_pretrained_agents = bool(params["use_pretrained_agents"])

        for agent in self.agents.values():
            agent.update_parameters(
                self.config.learning_rate,
                self.config.discount_factor,
                self.config.exploration_rate,
            )

    @staticmethod
    def _validate_parameters(params: Mapping[str, object]) -> None:
        unknown = set(params) - UPDATABLE_PARAMETERS
        if unknown:
            raise ValueError(f"Unknown parameters: {sorted(unknown)}")
        for name, (low, high) in PARAMETER_RANGES.items():
            if name in params and not low <= params[name] <= high:
                raise ValueError(f"{name}={params[name]!r} outside [{low}, {high}]")
        if "team_size" in params and int(params["team_size"]) != params["team_size"]:
            raise ValueError("team_size must be an integer")
        if "reward_weights" in params:
            weights = params["reward_weights"]
            values = asdict(weights) if isinstance(weights, RewardWeights) else dict(weights)
            low, high = REWARD_WEIGHT_RANGE
            for key, value in values.items():
                if key not in ("offense", "defense", "cooperation"):
                    raise ValueError(f"Unknown reward weight {key!r}")
                if not low <= value <= high:
                    raise ValueError(f"reward weight {key}={value!r} outside [{low}, {high}]")
        strategy = params.get("pretrained_strategy")
        if strategy and strategy not in TEAM_STRATEGIES:
            raise ValueError(f"Unknown strategy {strategy!r}; expected one of {sorted(TEAM_STRATEGIES)}")

    # Tick loop ----------------------------------------------------------
    def update(self) -> Optional[StepResult]:
        """Advance one tick. Returns None while paused or on a skipped frame."""
        if not self.is_running:
            return None
        self.frame_count = (self.frame_count + 1) % self.config.frame_skip
        if self.frame_count != 0:
            return None

        states = self.env.observations()
        game_state = self.env.get_game_state(include_heatmap=False) if self.use_pretrained_agents else None

        actions: Dict[str, int] = {}
        for agent_id, state in states.items():
            if self.use_pretrained_agents:
                actions[agent_id] = pretrained_action(agent_id, state, game_state, self.behaviours, self.rng)
            else:
                actions[agent_id] = self.agents[agent_id].select_action(state)

        learning = self.is_training and not self.use_pretrained_agents
        if learning:
            self.prev_states = dict(states)
            self.prev_actions = dict(actions)

        result = self.env.step(actions)
        for agent_id, reward in result.rewards.items():
            self._episode_rewards[Team.from_agent_id(agent_id).value] += reward

        if learning:
            for agent_id, agent in self.agents.items():
                if agent_id not in self.prev_states:
                    continue
                agent.remember(
                    self.prev_states[agent_id],
                    self.prev_actions[agent_id],
                    result.rewards.get(agent_id, 0.0),
                    result.states[agent_id],
                    result.done,
                )
                agent.replay()

        for agent in self.agents.values():
            agent.poll_training()

        if result.done:
            self._episode_ended(result)
        return result

    def _episode_ended(self, result: StepResult) -> None:
        self.episode_count += 1
        red_score, blue_score = self.env.red_score, self.env.blue_score
        if red_score > blue_score:
            self.metrics.red_wins += 1
        elif blue_score > red_score:
            self.metrics.blue_wins += 1
        else:
            self.metrics.draws += 1
        self.metrics.episode_steps.append(int(result.info["episode_length"]))
        self.metrics.episode_rewards.append(dict(self._episode_rewards))
        logger.info(
            "Episode %d: red %d - blue %d in %d steps (rewards red=%.2f blue=%.2f)",
            self.episode_count, red_score, blue_score, result.info["episode_length"],
            self._episode_rewards["red"], self._episode_rewards["blue"],
        )

        if self.is_training and self.episode_count >= self.max_episodes:
            self.stop_training()
            logger.info("Training completed after %d episodes", self.episode_count)

        self.env.reset()
        self._clear_episode_cache()

    def _clear_episode_cache(self) -> None:
        self.prev_states = {}
        self.prev_actions = {}
        self._episode_rewards = {team.value: 0.0 for team in Team}

    def wait_for_training(self) -> None:
        for agent in self.agents.values():
            agent.wait_for_training()

    def close(self) -> None:
        for agent in self.agents.values():
            agent.close()

    # Customization ------------------------------------------------------
    def add_obstacle(self, x: int, y: int) -> bool:
        if not self._is_valid_obstacle_position(x, y):
            return False
        self.env.add_obstacle(x, y)
        return True

    def remove_obstacle(self, x: int, y: int) -> bool:
        return self.env.remove_obstacle(x, y)

    def _is_valid_obstacle_position(self, x: int, y: int) -> bool:
        world = self.env.world
        if not world.in_bounds(x, y):
            return False
        if (x, y) in (world.red_flag.position, world.blue_flag.position):
            return False
        # Keep the midline gaps open so a path between the flags survives.
        if x == self.env.grid_size // 2 and y % 3 == 0:
            return False
        return (x, y) not in world.walls

    def update_flag_position(self, team: Union[Team, str], x: int, y: int) -> bool:
        try:
            team = Team(team)
        except ValueError:
            return False
        if not self._is_valid_flag_position(team, x, y):
            return False
        self.env.set_flag_home(team, x, y)
        return True

    def _is_valid_flag_position(self, team: Team, x: int, y: int) -> bool:
        world = self.env.world
        if not world.in_bounds(x, y):
            return False
        if team == Team.RED and x >= world.half:
            return False
        if team == Team.BLUE and x < world.half:
            return False
        return (x, y) not in world.walls

    # State surface ------------------------------------------------------
    def get_agent_stats(self) -> Dict[str, Dict[str, float]]:
        return {agent_id: agent.stats() for agent_id, agent in self.agents.items()}

    def get_heatmap_data(self) -> Dict[str, np.ndarray]:
        return {team.value: self.env.heatmap(team) for team in Team}

    def get_game_state(self) -> Dict[str, object]:
        state = self.env.get_game_state()
        state.update(
            {
                "is_running": self.is_running,
                "is_training": self.is_training,
                "episode_count": self.episode_count,
                "metrics": self.metrics.as_dict(),
                "agent_stats": self.get_agent_stats(),
                "red_agents": sum(1 for agent in self.agents.values() if agent.team == Team.RED),
                "blue_agents": sum(1 for agent in self.agents.values() if agent.team == Team.BLUE),
                "use_pretrained_agents": self.use_pretrained_agents,
                "pretrained_strategy": self.pretrained_strategy,
            }
        )
        return state

    def get_performance_metrics(self, recent: int = 10) -> Dict[str, object]:
        decided = self.metrics.red_wins + self.metrics.blue_wins
        history = self.metrics.episode_rewards[-recent:]
        return {
            "red_win_rate": self.metrics.red_wins / decided if decided else 0.0,
            "blue_win_rate": self.metrics.blue_wins / decided if decided else 0.0,
            "red_recent_reward": float(np.mean([r["red"] for r in history])) if history else 0.0,
            "blue_recent_reward": float(np.mean([r["blue"] for r in history])) if history else 0.0,
            "total_episodes": self.episode_count,
            "episode_rewards": list(self.metrics.episode_rewards),
            "episode_steps": list(self.metrics.episode_steps),
            "use_pretrained_agents": self.use_pretrained_agents,
            "pretrained_strategy": self.pretrained_strategy,
        }

    # Persistence --------------------------------------------------------
    def save_agents(self, store: Optional[ModelStore] = None) -> bool:
        store = store or self.store
        results = [agent.save_model(store) for agent in self.agents.values()]
        ok = all(results)
        logger.info("Saved %d/%d agent models", sum(results), len(results))
        return ok

    def load_agents(self, store: Optional[ModelStore] = None) -> bool:
        """Restore every agent or none of them."""
        store = store or self.store
        payloads = {}
        for agent_id, agent in self.agents.items():
            payload = store.load(agent.model_key)
            if not agent.accepts(payload):
                logger.warning("Failed to load agent models: %s has no usable saved state", agent_id)
                return False
            payloads[agent_id] = payload
        for agent_id, payload in payloads.items():
            self.agents[agent_id].restore(payload)
        logger.info("Loaded %d agent models", len(payloads))
        return True
