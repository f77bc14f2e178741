from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass
class Flag:
    """A team's flag. The flag stays on its cell while carried; ``holder`` tracks the carrier."""

    team: str
    x: int
    y: int
    home: Tuple[int, int]
    holder: Optional[str] = None

    @property
    def position(self) -> Tuple[int, int]:
        return (self.x, self.y)

    @property
    def is_held(self) -> bool:
        return self.holder is not None

    def pick_up(self, agent_id: str) -> None:
        self.holder = agent_id

    def release(self) -> None:
        self.holder = None

    def return_home(self) -> None:
        self.x, self.y = self.home
        self.holder = None

    def relocate(self, x: int, y: int) -> None:
        """Move the flag's base; it becomes the cell the flag returns to after a tag."""
        self.home = (x, y)
        self.x, self.y = x, y

    def as_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "holder": self.holder}
