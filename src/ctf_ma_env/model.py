from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Sequence

import numpy as np
from psann import PSANNRegressor

from .env import OBS_DIM, Action


@dataclass
class QNetworkConfig:
    """Configuration for a PSANNRegressor used as a Q-network over the flat observation vector."""

    hidden_layers: int = 2
    hidden_units: int = 64
    w0: float = 30.0
    device: str = "auto"
    optimizer: str = "adam"
    lr: float = 1e-3
    batch_size: int = 32
    epochs: int = 1  # one pass per replay call
    warm_start: bool = True  # keep training the same network across fits


def encode_batch(states: Sequence[np.ndarray]) -> np.ndarray:
    """Stack per-agent observation vectors into a float32 ``[B, OBS_DIM]`` batch."""
    batch = np.stack([np.asarray(s, dtype=np.float32) for s in states], axis=0)
    if batch.shape[1] != OBS_DIM:
        raise ValueError(f"Expected observations of length {OBS_DIM}, got {batch.shape[1]}")
    return batch


class PSANNQNetwork:
    """
    Wrapper around PSANNRegressor configured as a dense Q-network.
    Targets are full Q-vectors, so a plain MSE regression fit is the Q-learning update.
    """

    def __init__(
        self,
        action_dim: int = len(Action),
        obs_dim: int = OBS_DIM,
        psann_cfg: Optional[QNetworkConfig] = None,
    ) -> None:
        self.action_dim = action_dim
        self.obs_dim = obs_dim
        self.cfg = replace(psann_cfg) if psann_cfg is not None else QNetworkConfig()
        self.model = PSANNRegressor(
            hidden_layers=self.cfg.hidden_layers,
            hidden_units=self.cfg.hidden_units,
            w0=self.cfg.w0,
            device=self.cfg.device,
            optimizer=self.cfg.optimizer,
            lr=self.cfg.lr,
            batch_size=self.cfg.batch_size,
            epochs=self.cfg.epochs,
            warm_start=self.cfg.warm_start,
        )

    def predict_q(self, obs_batch: np.ndarray) -> np.ndarray:
        """Q-values for a ``[B, obs_dim]`` observation batch, shaped ``[B, action_dim]``."""
        preds = np.asarray(self.model.predict(obs_batch), dtype=np.float32)
        return preds.reshape(obs_batch.shape[0], self.action_dim)

    def fit_q(self, obs_batch: np.ndarray, target_q: np.ndarray, verbose: int = 0) -> None:
        self.model.fit(obs_batch, target_q, verbose=verbose)

    def is_fitted(self) -> bool:
        """Return True when the underlying PSANN estimator has been trained at least once."""
        return hasattr(self.model, "model_")

    def ensure_initialized(self) -> None:
        """
        psann requires calling fit before inference; warm-start the estimator
        by fitting zeros on a zero batch so predict() works from the first tick.
        """
        if self.is_fitted():
            return
        zeros_obs = np.zeros((self.cfg.batch_size, self.obs_dim), dtype=np.float32)
        zeros_q = np.zeros((self.cfg.batch_size, self.action_dim), dtype=np.float32)
        self.fit_q(zeros_obs, zeros_q, verbose=0)

    def set_learning_rate(self, lr: float) -> None:
        # The estimator builds a fresh optimizer from ``lr`` on every fit, warm-started or not.
        self.cfg.lr = lr
        self.model.lr = lr


def build_default_q_model(psann_cfg: Optional[QNetworkConfig] = None) -> PSANNQNetwork:
    q_model = PSANNQNetwork(action_dim=len(Action), obs_dim=OBS_DIM, psann_cfg=psann_cfg)
    q_model.ensure_initialized()
    return q_model
