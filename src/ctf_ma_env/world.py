from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Set, Tuple

from .objects import Flag

Cell = Tuple[int, int]


class Team(str, Enum):
    RED = "red"
    BLUE = "blue"

    @property
    def opponent(self) -> "Team":
        return Team.BLUE if self == Team.RED else Team.RED

    @classmethod
    def from_agent_id(cls, agent_id: str) -> "Team":
        return cls(agent_id.split("-", 1)[0])


@dataclass
class AgentEntity:
    agent_id: str
    team: Team
    x: int
    y: int
    has_flag: bool = False
    previous_position: Optional[Cell] = None
    stationary_count: int = 0
    last_known_score: int = 0

    @property
    def position(self) -> Cell:
        return (self.x, self.y)

    def as_dict(self) -> dict:
        return {"id": self.agent_id, "x": self.x, "y": self.y, "has_flag": self.has_flag}


def default_flag_cells(grid_size: int) -> Tuple[Cell, Cell]:
    """Return the (red, blue) flag home cells for a square grid."""
    mid = grid_size // 2
    return (2, mid), (grid_size - 3, mid)


def default_walls(grid_size: int) -> Set[Cell]:
    """Vertical wall on the midline with a gap on every third row."""
    mid = grid_size // 2
    return {(mid, y) for y in range(6, grid_size - 6) if y % 3 != 0}


class GridWorld:
    """Arena geometry plus the entities living in it: walls, flags and both rosters."""

    def __init__(self, grid_size: int, red_flag: Cell, blue_flag: Cell, walls: Optional[Set[Cell]] = None):
        self.grid_size = grid_size
        self.walls: Set[Cell] = set(walls or ())
        self.red_flag = Flag(team=Team.RED.value, x=red_flag[0], y=red_flag[1], home=red_flag)
        self.blue_flag = Flag(team=Team.BLUE.value, x=blue_flag[0], y=blue_flag[1], home=blue_flag)
        self.red_team: List[AgentEntity] = []
        self.blue_team: List[AgentEntity] = []

    @property
    def half(self) -> float:
        return self.grid_size / 2

    def in_bounds(self, x: int, y: int) -> bool:
        return 0 <= x < self.grid_size and 0 <= y < self.grid_size

    def is_walkable(self, x: int, y: int) -> bool:
        if not self.in_bounds(x, y):
            return False
        return (x, y) not in self.walls

    def spawn_team(self, team: Team, team_size: int) -> None:
        x = 1 if team == Team.RED else self.grid_size - 2
        roster = [
            AgentEntity(agent_id=f"{team.value}-{i}", team=team, x=x, y=3 + i * 3)
            for i in range(team_size)
        ]
        if team == Team.RED:
            self.red_team = roster
        else:
            self.blue_team = roster

    def roster(self, team: Team) -> List[AgentEntity]:
        return self.red_team if team == Team.RED else self.blue_team

    def agents(self) -> Iterator[AgentEntity]:
        yield from self.red_team
        yield from self.blue_team

    def agent(self, agent_id: str) -> AgentEntity:
        for agent in self.agents():
            if agent.agent_id == agent_id:
                return agent
        raise KeyError(f"Unknown agent id: {agent_id}")

    def own_flag(self, team: Team) -> Flag:
        return self.red_flag if team == Team.RED else self.blue_flag

    def enemy_flag(self, team: Team) -> Flag:
        return self.blue_flag if team == Team.RED else self.red_flag

    def move_agent(self, agent: AgentEntity, delta: Cell) -> bool:
        new_x = agent.x + delta[0]
        new_y = agent.y + delta[1]
        if self.is_walkable(new_x, new_y):
            agent.x, agent.y = new_x, new_y
            return True
        return False

    # Territory helpers ---------------------------------------------------
    def in_own_half(self, agent: AgentEntity) -> bool:
        """Strictly inside the agent's home half (the midline column belongs to neither)."""
        if agent.team == Team.RED:
            return agent.x < self.half
        return agent.x > self.half

    def in_enemy_half(self, agent: AgentEntity) -> bool:
        if agent.team == Team.RED:
            return agent.x > self.half
        return agent.x < self.half

    def at_home_boundary(self, agent: AgentEntity) -> bool:
        if agent.team == Team.RED:
            return agent.x <= 1
        return agent.x >= self.grid_size - 2
