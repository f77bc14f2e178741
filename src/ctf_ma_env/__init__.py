"""Two-team capture-the-flag grid environment with PSANN-backed independent DQN agents."""

from .controller import ControllerConfig, EpisodeMetrics, GameController  # noqa: F401
from .env import Action, CaptureTheFlagEnv, EnvConfig, RewardWeights, StepResult  # noqa: F401
from .model import PSANNQNetwork, QNetworkConfig, build_default_q_model, encode_batch  # noqa: F401
from .rl import PolicyAgent, ReplayBuffer, TrainingQueue, make_exploration  # noqa: F401
from .scripted import TEAM_STRATEGIES, Role, ScriptedPolicy, assign_roles, scripted_action  # noqa: F401
from .storage import InMemoryModelStore, ModelStore, PickleModelStore  # noqa: F401
from .tasks import TaskSpec, task_presets  # noqa: F401
from .world import GridWorld, Team  # noqa: F401
