from __future__ import annotations

import logging
import pickle
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


def model_key(agent_id: str) -> str:
    """Deterministic storage key for an agent's Q-network."""
    return f"agent-{agent_id}"


class ModelStore:
    """Key/value contract for persisting Q-network parameters. Never raises on I/O failure."""

    def save(self, key: str, payload: Any) -> bool:
        raise NotImplementedError

    def load(self, key: str) -> Optional[Any]:
        """Return the stored payload, or None when it is missing or unreadable."""
        raise NotImplementedError


class InMemoryModelStore(ModelStore):
    """Keeps pickled payloads in a dict; useful for tests and short-lived sessions."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}

    def save(self, key: str, payload: Any) -> bool:
        try:
            self._blobs[key] = pickle.dumps(payload)
        except Exception as exc:
            logger.warning("Could not serialize model %s: %s", key, exc)
            return False
        return True

    def load(self, key: str) -> Optional[Any]:
        blob = self._blobs.get(key)
        if blob is None:
            return None
        try:
            return pickle.loads(blob)
        except Exception as exc:
            logger.warning("Could not deserialize model %s: %s", key, exc)
            return None

    def __contains__(self, key: str) -> bool:
        return key in self._blobs


class PickleModelStore(ModelStore):
    """Stores each payload as ``<root>/<key>.pkl``."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        return self.root / f"{key}.pkl"

    def save(self, key: str, payload: Any) -> bool:
        path = self.path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                pickle.dump(payload, f)
        except Exception as exc:
            logger.warning("Could not save model %s to %s: %s", key, path, exc)
            return False
        logger.debug("Saved model %s to %s", key, path)
        return True

    def load(self, key: str) -> Optional[Any]:
        path = self.path_for(key)
        if not path.exists():
            logger.warning("No saved model for %s at %s", key, path)
            return None
        try:
            with open(path, "rb") as f:
                return pickle.load(f)
        except Exception as exc:  # corrupt bytes raise almost anything from pickle
            logger.warning("Could not load model %s from %s: %s", key, path, exc)
            return None
